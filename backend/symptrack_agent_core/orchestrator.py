from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from symptrack_memory.conversation_store import ConversationStore
from symptrack_memory.hydrator import WorkingMemoryHydrator
from symptrack_memory.retrieval import SemanticRetrieval

from .change_tracker import ChangeTracker
from .dispatcher import WorkflowDispatcher
from .models import EntityChange
from .notifications import CompletedStatus, ProcessingStatus, StatusNotifier, StatusSink, StatusUpdateBase

logger = logging.getLogger(__name__)


@dataclass
class ChatTurnResult:
    response_text: str
    conversation_id: str
    is_new_conversation: bool
    intent: str
    phase: str
    explicit_changes: list[EntityChange] = field(default_factory=list)
    status_updates: list[StatusUpdateBase] = field(default_factory=list)

    def as_payload(self) -> dict[str, Any]:
        return {
            "response": self.response_text,
            "conversation_id": self.conversation_id,
            "is_new_conversation": self.is_new_conversation,
            "intent": self.intent,
            "phase": self.phase,
            "explicit_changes": [change.model_dump() for change in self.explicit_changes],
            "status_updates": [update.model_dump(mode="json") for update in self.status_updates],
        }


class HealthChatOrchestrator:
    """Runs one chat turn end to end.

    Order of work: resolve the conversation, hydrate working memory, dispatch
    to a workflow, derive explicit changes, then persist and index both
    messages. A fatal error before persistence means neither message is
    stored.
    """

    def __init__(
        self,
        *,
        conversations: ConversationStore,
        hydrator: WorkingMemoryHydrator,
        dispatcher: WorkflowDispatcher,
        retrieval: SemanticRetrieval | None = None,
    ) -> None:
        self.conversations = conversations
        self.hydrator = hydrator
        self.dispatcher = dispatcher
        self.retrieval = retrieval

    def process_message(
        self,
        user_id: str,
        message: str,
        conversation_id: str | None = None,
        status_sink: StatusSink | None = None,
    ) -> ChatTurnResult:
        if not (message or "").strip():
            raise ValueError("Message must not be empty.")

        conversation, is_new = self.conversations.get_or_create_conversation(user_id, conversation_id, message)
        notifier = StatusNotifier(status_sink)
        tracker = ChangeTracker(notifier)
        notifier.emit(ProcessingStatus(message="Processing your message"))

        context = self.hydrator.hydrate(user_id, conversation.id)
        result = self.dispatcher.dispatch(message, context, notifier)
        self.hydrator.flush(context)
        changes = tracker.derive_changes(result, context)
        notifier.emit(CompletedStatus(message="Done"))
        status_updates = tracker.collect_status_updates()

        user_vector = assistant_vector = None
        if self.retrieval is not None:
            # Embed before any message is written so a provider failure leaves no half-stored turn.
            user_vector = self.retrieval.embed(message)
            assistant_vector = self.retrieval.embed(result.response_text)

        user_message = self.conversations.add_message(
            user_id=user_id,
            conversation_id=conversation.id,
            role="user",
            content=message,
        )
        assistant_message = self.conversations.add_message(
            user_id=user_id,
            conversation_id=conversation.id,
            role="assistant",
            content=result.response_text,
            status_json=json.dumps(
                {
                    "intent": result.intent,
                    "phase": context.phase,
                    "status_updates": [update.model_dump(mode="json") for update in status_updates],
                    "explicit_changes": [change.model_dump() for change in changes],
                }
            ),
        )
        if self.retrieval is not None:
            self.retrieval.store(user_message.id, user_id, user_vector)
            self.retrieval.store(assistant_message.id, user_id, assistant_vector)

        logger.info(
            "chat turn user=%s conversation=%s intent=%s changes=%d phase=%s",
            user_id,
            conversation.id,
            result.intent,
            len(changes),
            context.phase,
        )
        return ChatTurnResult(
            response_text=result.response_text,
            conversation_id=conversation.id,
            is_new_conversation=is_new,
            intent=result.intent,
            phase=context.phase,
            explicit_changes=changes,
            status_updates=status_updates,
        )
