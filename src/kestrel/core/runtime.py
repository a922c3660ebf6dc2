from __future__ import annotations

from kestrel.config import get_settings
from kestrel.core.batch import build_operations
from kestrel.core.events import LogStream
from kestrel.core.jobs import RejectionHook
from kestrel.core.learning import RejectionLearningQueue
from kestrel.core.orchestrator import RunOrchestrator
from kestrel.db.session import SessionLocal
from kestrel.llm.router import LLMRouter

_LOG_STREAM: LogStream | None = None
_ORCHESTRATOR: RunOrchestrator | None = None
_LEARNING_QUEUE: RejectionLearningQueue | None = None


def get_log_stream() -> LogStream:
    global _LOG_STREAM
    if _LOG_STREAM is None:
        _LOG_STREAM = LogStream()
    return _LOG_STREAM


def get_orchestrator() -> RunOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = RunOrchestrator(
            build_operations(get_settings()),
            session_factory=SessionLocal,
            log_stream=get_log_stream(),
        )
    return _ORCHESTRATOR


def get_learning_queue() -> RejectionLearningQueue:
    global _LEARNING_QUEUE
    if _LEARNING_QUEUE is None:
        settings = get_settings()
        _LEARNING_QUEUE = RejectionLearningQueue(
            SessionLocal,
            analyst_factory=lambda: LLMRouter(settings),
            default_profile=settings.default_profile,
        )
    return _LEARNING_QUEUE


def rejection_hook() -> RejectionHook | None:
    if not get_settings().learning_queue_enabled:
        return None
    return get_learning_queue().submit


def reset_runtime() -> None:
    global _LOG_STREAM, _ORCHESTRATOR, _LEARNING_QUEUE
    if _LEARNING_QUEUE is not None:
        _LEARNING_QUEUE.stop(timeout=1)
    _LOG_STREAM = None
    _ORCHESTRATOR = None
    _LEARNING_QUEUE = None
