from .change_tracker import ChangeTracker
from .dispatcher import WorkflowDispatcher
from .intent import IntentClassifier
from .models import INTENT_ASSESSMENT, INTENT_SYMPTOM_TRACKING, INTENTS, EntityChange, WorkflowResult
from .notifications import StatusNotifier, StatusUpdate, StatusUpdateBase, status_update_adapter
from .orchestrator import ChatTurnResult, HealthChatOrchestrator
from .registry import WorkflowDefinition, WorkflowRegistry

__all__ = [
    "INTENTS",
    "INTENT_ASSESSMENT",
    "INTENT_SYMPTOM_TRACKING",
    "ChangeTracker",
    "ChatTurnResult",
    "EntityChange",
    "HealthChatOrchestrator",
    "IntentClassifier",
    "StatusNotifier",
    "StatusUpdate",
    "StatusUpdateBase",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowRegistry",
    "WorkflowResult",
    "status_update_adapter",
]
