from symptrack_agent_core.models import INTENT_ASSESSMENT, INTENT_SYMPTOM_TRACKING
from symptrack_agent_core.registry import WorkflowDefinition, WorkflowRegistry

from .assessment import AssessmentWorkflow
from .extraction import FindingExtractor, RuleBasedExtractor
from .providers import (
    OpenAIChatClient,
    OpenAIEmbeddingClient,
    ProviderError,
    chat_client_from_env,
    embedding_client_from_env,
)
from .symptom_tracking import SymptomTrackingWorkflow


def register_workflows(
    registry: WorkflowRegistry,
    symptom_tracking: SymptomTrackingWorkflow,
    assessment: AssessmentWorkflow,
) -> None:
    registry.register(WorkflowDefinition(INTENT_SYMPTOM_TRACKING, symptom_tracking.run, symptom_tracking.name))
    registry.register(WorkflowDefinition(INTENT_ASSESSMENT, assessment.run, assessment.name))


__all__ = [
    "AssessmentWorkflow",
    "FindingExtractor",
    "OpenAIChatClient",
    "OpenAIEmbeddingClient",
    "ProviderError",
    "RuleBasedExtractor",
    "SymptomTrackingWorkflow",
    "chat_client_from_env",
    "embedding_client_from_env",
    "register_workflows",
]
