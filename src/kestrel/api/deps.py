from __future__ import annotations

from collections.abc import Generator

from sqlalchemy.orm import Session

from kestrel.core.orchestrator import RunOrchestrator
from kestrel.core.runtime import get_orchestrator
from kestrel.db.session import get_db_session


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


def get_run_orchestrator() -> RunOrchestrator:
    return get_orchestrator()
