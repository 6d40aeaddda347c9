from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from symptrack_memory.models import ConversationContext

    from .models import WorkflowResult
    from .notifications import StatusNotifier


WorkflowHandler = Callable[[str, "ConversationContext", "StatusNotifier"], "WorkflowResult"]


@dataclass
class WorkflowDefinition:
    intent: str
    handler: WorkflowHandler
    name: str = ""


class WorkflowRegistry:
    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowDefinition] = {}

    def register(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.intent] = workflow

    def resolve(self, intent: str) -> WorkflowDefinition:
        workflow = self._workflows.get(intent)
        if not workflow:
            raise KeyError(f"Workflow not found for intent: {intent}")
        return workflow

    def list_intents(self) -> list[str]:
        return sorted(self._workflows.keys())
