from __future__ import annotations

import hashlib
import json
import logging
import os
import queue
import re
import secrets
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from symptrack_agent_core import (
    HealthChatOrchestrator,
    IntentClassifier,
    WorkflowDispatcher,
    WorkflowRegistry,
)
from symptrack_memory import (
    ConversationNotFoundError,
    ConversationStore,
    DimensionMismatchError,
    EntityStore,
    EpisodeLinker,
    HydrationError,
    MemoryPolicyError,
    MemoryPolicyGuard,
    SemanticRetrieval,
    SQLiteMemoryDB,
    SymptrackError,
    VectorStore,
    WorkflowExecutionError,
    WorkingMemoryHydrator,
)
from symptrack_memory.retrieval import DEFAULT_DIMENSION, EmbeddingProvider
from symptrack_workflows import (
    AssessmentWorkflow,
    FindingExtractor,
    ProviderError,
    SymptomTrackingWorkflow,
    chat_client_from_env,
    embedding_client_from_env,
    register_workflows,
)
from symptrack_workflows.providers import TextGenerator

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=os.getenv("SYMPTRACK_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("symptrack")


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    conversation_id: str | None = None


class RenameConversationRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class SymptrackApp:
    def __init__(
        self,
        *,
        generator: TextGenerator | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        use_env_providers: bool = True,
    ) -> None:
        db_path = os.getenv(
            "SYMPTRACK_DB_PATH",
            str((Path(__file__).resolve().parent / "symptrack.sqlite")),
        )
        self.db = SQLiteMemoryDB(db_path)
        self.guard = MemoryPolicyGuard()
        self.store = EntityStore(self.db, self.guard)
        self.conversations = ConversationStore(self.db)
        self.vectors = VectorStore(self.db)

        if use_env_providers:
            generator = generator or chat_client_from_env()
            embedding_provider = embedding_provider or embedding_client_from_env()
        self.generator = generator
        self.retrieval: SemanticRetrieval | None = None
        if embedding_provider is not None:
            self.retrieval = SemanticRetrieval(
                embedding_provider,
                self.vectors,
                self.conversations,
                dimension=int(os.getenv("SYMPTRACK_EMBEDDING_DIMENSION", str(DEFAULT_DIMENSION))),
            )

        self.hydrator = WorkingMemoryHydrator(self.store)
        self.linker = EpisodeLinker(self.store)
        self.registry = WorkflowRegistry()
        register_workflows(
            self.registry,
            SymptomTrackingWorkflow(
                store=self.store,
                linker=self.linker,
                extractor=FindingExtractor(generator),
                generator=generator,
            ),
            AssessmentWorkflow(store=self.store, retrieval=self.retrieval, generator=generator),
        )
        self.dispatcher = WorkflowDispatcher(registry=self.registry, classifier=IntentClassifier())
        self.orchestrator = HealthChatOrchestrator(
            conversations=self.conversations,
            hydrator=self.hydrator,
            dispatcher=self.dispatcher,
            retrieval=self.retrieval,
        )


container = SymptrackApp()
app = FastAPI(title="SymptomTrack Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque here; identity is verified upstream.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ConversationNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (MemoryPolicyError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DimensionMismatchError) or isinstance(exc.__cause__, DimensionMismatchError):
        return HTTPException(status_code=503, detail=str(exc.__cause__ or exc))
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (HydrationError, WorkflowExecutionError)):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=500, detail="Chat pipeline error.")


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.get("/health")
def health():
    return {
        "ok": True,
        "text_generation": container.generator is not None,
        "semantic_retrieval": container.retrieval is not None,
    }


@app.post("/chat")
def chat(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        turn = container.orchestrator.process_message(user_id, payload.message, payload.conversation_id)
    except (SymptrackError, ValueError) as exc:
        logger.warning("chat turn failed user=%s: %s", user_id, exc)
        raise _http_error(exc) from exc
    return turn.as_payload()


# Turns run here so the SSE generator can forward status updates while the workflow is still working.
turn_executor = ThreadPoolExecutor(max_workers=int(os.getenv("SYMPTRACK_STREAM_WORKERS", "4")))
_TURN_FINISHED = object()


def stream_chat_events(
    orchestrator: HealthChatOrchestrator,
    user_id: str,
    message: str,
    conversation_id: str | None = None,
):
    updates: queue.Queue = queue.Queue()

    def _run_turn():
        try:
            return orchestrator.process_message(user_id, message, conversation_id, status_sink=updates.put)
        finally:
            updates.put(_TURN_FINISHED)

    future = turn_executor.submit(_run_turn)
    while True:
        update = updates.get()
        if update is _TURN_FINISHED:
            break
        yield _emit_sse("status", update.model_dump(mode="json"))

    try:
        turn = future.result()
    except (SymptrackError, ValueError) as exc:
        logger.warning("chat stream failed user=%s: %s", user_id, exc)
        error = _http_error(exc)
        yield _emit_sse("error", {"status": error.status_code, "message": error.detail})
        return

    for chunk in turn.response_text.split(" "):
        yield _emit_sse("token", {"delta": chunk + " "})
    body = turn.as_payload()
    yield _emit_sse(
        "message",
        {
            "text": turn.response_text,
            "conversation_id": turn.conversation_id,
            "is_new_conversation": turn.is_new_conversation,
            "phase": turn.phase,
        },
    )
    yield _emit_sse("changes", {"items": body["explicit_changes"]})


@app.post("/chat/stream")
def chat_stream(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return StreamingResponse(
        stream_chat_events(container.orchestrator, user_id, payload.message, payload.conversation_id),
        media_type="text/event-stream",
    )


@app.get("/episodes")
def list_episodes(
    status: str | None = None,
    limit: int = 50,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        episodes = container.store.list_episodes(user_id, status=status, limit=limit)
    except MemoryPolicyError as exc:
        raise _http_error(exc) from exc
    return {"items": [episode.to_dict() for episode in episodes]}


@app.get("/episodes/{episode_id}")
def get_episode(
    episode_id: int,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    episode = container.store.get_episode(user_id, episode_id)
    if episode is None:
        raise HTTPException(status_code=404, detail="Episode not found")
    return episode.to_dict()


@app.get("/symptoms")
def list_symptoms(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"items": [symptom.to_dict() for symptom in container.store.get_symptoms(user_id)]}


@app.get("/symptoms/{name}/history")
def symptom_history(
    name: str,
    limit: int = 20,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    symptom = container.store.get_symptom_by_name(user_id, name)
    if symptom is None:
        raise HTTPException(status_code=404, detail="Symptom not found")
    episodes = container.store.get_episodes_by_symptom(user_id, name, limit=limit)
    return {"symptom": symptom.name, "items": [episode.to_dict() for episode in episodes]}


@app.get("/assessments")
def list_assessments(
    limit: int = 10,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"items": [item.to_dict() for item in container.store.get_recent_assessments(user_id, limit)]}


@app.get("/assessments/conversation/{conversation_id}")
def get_conversation_assessment(
    conversation_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    assessment = container.store.get_assessment_by_conversation(user_id, conversation_id)
    if assessment is None:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return assessment.to_dict()


@app.get("/assessments/{assessment_id}")
def get_assessment(
    assessment_id: int,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    assessment = container.store.get_assessment(user_id, assessment_id)
    if assessment is None:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return assessment.to_dict()


@app.get("/conversations")
def list_conversations(
    limit: int = 20,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"items": [item.to_dict() for item in container.conversations.list_conversations(user_id, limit)]}


@app.get("/conversations/{conversation_id}/messages")
def conversation_messages(
    conversation_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        messages = container.conversations.get_messages(user_id, conversation_id)
    except ConversationNotFoundError as exc:
        raise _http_error(exc) from exc
    return {"items": [message.to_dict() for message in messages]}


@app.put("/conversations/{conversation_id}")
def rename_conversation(
    conversation_id: str,
    payload: RenameConversationRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        conversation = container.conversations.update_title(user_id, conversation_id, payload.title)
    except (ConversationNotFoundError, ValueError) as exc:
        raise _http_error(exc) from exc
    return conversation.to_dict()


@app.delete("/conversations/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        container.conversations.delete_conversation(user_id, conversation_id)
    except ConversationNotFoundError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def require_admin_token(x_admin_token: str | None) -> None:
    expected = os.getenv("SYMPTRACK_ADMIN_TOKEN", "").strip()
    if not expected or not x_admin_token or not secrets.compare_digest(x_admin_token.strip(), expected):
        raise HTTPException(status_code=403, detail="Operator token required")


@app.delete("/debug/embeddings")
def clear_embeddings(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_admin_token: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    require_admin_token(x_admin_token)
    removed = container.vectors.clear_all()
    logger.warning("embeddings cleared by user=%s count=%s", user_id, removed)
    return {"deleted": removed}
