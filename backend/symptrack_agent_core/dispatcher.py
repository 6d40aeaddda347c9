from __future__ import annotations

import logging

from symptrack_memory.errors import WorkflowExecutionError
from symptrack_memory.models import ConversationContext

from .intent import IntentClassifier
from .models import WorkflowResult
from .notifications import StatusNotifier
from .registry import WorkflowRegistry

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Routes a message to the workflow registered for its intent.

    Whatever a workflow raises is re-raised as WorkflowExecutionError. Writes
    the workflow already committed are left in place.
    """

    def __init__(self, *, registry: WorkflowRegistry, classifier: IntentClassifier | None = None) -> None:
        self.registry = registry
        self.classifier = classifier or IntentClassifier()

    def dispatch(self, message: str, context: ConversationContext, notifier: StatusNotifier) -> WorkflowResult:
        intent = self.classifier.classify(message)
        workflow = self.registry.resolve(intent)
        logger.info(
            "dispatching user=%s conversation=%s intent=%s workflow=%s",
            context.user_id,
            context.conversation_id,
            intent,
            workflow.name or intent,
        )
        try:
            result = workflow.handler(message, context, notifier)
        except WorkflowExecutionError:
            raise
        except Exception as exc:
            logger.exception("workflow failed intent=%s user=%s", intent, context.user_id)
            raise WorkflowExecutionError(intent, str(exc) or exc.__class__.__name__) from exc
        result.intent = intent
        return result
