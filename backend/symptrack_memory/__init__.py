from .conversation_store import ConversationStore
from .database import SQLiteMemoryDB
from .entity_store import EntityStore
from .episode_linker import EpisodeLinker, LinkResult
from .errors import (
    ConversationNotFoundError,
    DimensionMismatchError,
    HydrationError,
    SymptrackError,
    WorkflowExecutionError,
)
from .hydrator import WorkingMemoryHydrator
from .memory_policy_guard import MemoryPolicyError, MemoryPolicyGuard
from .models import ConversationContext, SymptomDetails
from .retrieval import SemanticRetrieval
from .vector_store import VectorStore

__all__ = [
    "ConversationContext",
    "ConversationNotFoundError",
    "ConversationStore",
    "DimensionMismatchError",
    "EntityStore",
    "EpisodeLinker",
    "HydrationError",
    "LinkResult",
    "MemoryPolicyError",
    "MemoryPolicyGuard",
    "SQLiteMemoryDB",
    "SemanticRetrieval",
    "SymptomDetails",
    "SymptrackError",
    "VectorStore",
    "WorkflowExecutionError",
    "WorkingMemoryHydrator",
]
