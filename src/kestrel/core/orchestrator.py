from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock, Thread
from typing import Any

from kestrel.core.batch import BatchContext, BatchOperation, SessionFactory
from kestrel.core.cancellation import CancellationToken
from kestrel.core.errors import InvalidBatchConfig, NoActiveRun, OrchestrationConflict, RunNotFound
from kestrel.core.events import LogStream, Subscription
from kestrel.db.models import RunRecord
from kestrel.db.repositories import Repository
from kestrel.db.session import SessionLocal

logger = logging.getLogger(__name__)

ACTIVE_STATES = {"running", "stopping"}


@dataclass
class ActiveRun:
    operation: str
    run_id: int | None
    started_at: datetime
    token: CancellationToken
    thread: Thread


def process_alive(pid: int | None) -> bool:
    if not pid or pid == os.getpid():
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class RunOrchestrator:
    """Runs at most one batch operation at a time on a worker thread.

    State moves idle -> running -> (stopping) -> idle, or to error when the
    operation raises. A start from error is allowed and clears it.
    """

    def __init__(
        self,
        operations: dict[str, BatchOperation],
        *,
        session_factory: SessionFactory = SessionLocal,
        log_stream: LogStream | None = None,
    ):
        self.operations = operations
        self.session_factory = session_factory
        self.stream = log_stream or LogStream()
        self._lock = RLock()
        self._state = "idle"
        self._error: str | None = None
        self._active: ActiveRun | None = None
        self._last_result: dict[str, Any] | None = None

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def start(
        self,
        operation: str,
        config: dict[str, Any] | None = None,
        *,
        resume_run_id: int | None = None,
    ) -> dict[str, Any]:
        op = self.operations.get(operation)
        if op is None:
            raise InvalidBatchConfig(f"unknown operation {operation!r}; expected one of {sorted(self.operations)}")
        if resume_run_id is not None and not op.tracks_run:
            raise InvalidBatchConfig(f"{operation} runs are not resumable")

        with self._lock:
            if self._state in ACTIVE_STATES:
                raise OrchestrationConflict("A batch is already running. Stop it first.")

            options: Any = None
            run_id: int | None = None
            cursor: str | None = None
            initial_processed = 0
            if resume_run_id is not None:
                with self.session_factory() as session:
                    record = self._resumable_record(Repository(session), op, resume_run_id)
                    options = op.parse_options(config or dict(record.filters_json or {}))
                    record = Repository(session).reopen_run_record(record.id, process_id=os.getpid())
                    run_id, cursor, initial_processed = record.id, record.last_cursor, record.items_processed
            else:
                options = op.parse_options(config or {})
                if op.tracks_run:
                    with self.session_factory() as session:
                        repo = Repository(session)
                        pending = repo.in_progress_run_records(op.name)
                        if pending:
                            raise OrchestrationConflict(
                                f"run {pending[0].id} ({op.name}) is still in progress; resume or reconcile it first"
                            )
                        record = repo.create_run_record(
                            operation=op.name,
                            filters=options.model_dump(mode="json"),
                            max_items=op.max_items(options),
                            start_page=op.start_page(options),
                            process_id=os.getpid(),
                        )
                        run_id = record.id

            token = CancellationToken()
            ctx = BatchContext(
                token=token,
                session_factory=self.session_factory,
                stream=self.stream,
                operation=op.name,
                run_id=run_id,
                resume_cursor=cursor or None,
                initial_processed=initial_processed,
            )
            thread = Thread(target=self._execute, args=(op, options, ctx), name=f"batch-{op.name}", daemon=True)
            self._active = ActiveRun(
                operation=op.name,
                run_id=run_id,
                started_at=datetime.now(UTC),
                token=token,
                thread=thread,
            )
            self._state = "running"
            self._error = None
            self.stream.status("running", operation=op.name)
            thread.start()
            logger.info("Started %s run_id=%s resume=%s", op.name, run_id, resume_run_id is not None)
            return self.status()

    def stop(self, reason: str = "stop requested") -> dict[str, Any]:
        with self._lock:
            if self._state != "running" or self._active is None:
                raise NoActiveRun("No batch is running")
            self._state = "stopping"
            self._active.token.request_stop(reason)
            self.stream.status("stopping", operation=self._active.operation)
            self.stream.log("Stop requested; finishing the current item")
            return self.status()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the active batch ends. Returns False on timeout."""
        with self._lock:
            active = self._active
        if active is None:
            return True
        active.thread.join(timeout)
        return not active.thread.is_alive()

    def subscribe(self) -> Subscription:
        return self.stream.subscribe()

    def status(self) -> dict[str, Any]:
        with self._lock:
            payload: dict[str, Any] = {
                "status": self._state,
                "pid": None,
                "operation": None,
                "run_id": None,
                "error": self._error,
                "started_at": None,
                "last_result": self._last_result,
            }
            if self._active is not None:
                payload.update(
                    pid=os.getpid(),
                    operation=self._active.operation,
                    run_id=self._active.run_id,
                    started_at=self._active.started_at.isoformat(),
                )
                return payload
        with self.session_factory() as session:
            records = Repository(session).in_progress_run_records()
        for record in records:
            if process_alive(record.process_id):
                payload.update(
                    status="running",
                    pid=record.process_id,
                    operation=record.operation,
                    run_id=record.id,
                    started_at=record.created_at.isoformat() if record.created_at else None,
                )
                return payload
        if records:
            stale = records[0]
            payload.update(
                status="error",
                operation=stale.operation,
                run_id=stale.id,
                error=(
                    f"run {stale.id} ({stale.operation}) was interrupted at cursor "
                    f"{stale.last_cursor or 'start'}; resume or reconcile it"
                ),
            )
        return payload

    def reconcile(self, run_id: int) -> dict[str, Any]:
        with self._lock:
            if self._active is not None and self._active.run_id == run_id:
                raise OrchestrationConflict(f"run {run_id} is active in this process")
            with self.session_factory() as session:
                repo = Repository(session)
                record = repo.get_run_record(run_id)
                if record is None:
                    raise RunNotFound(f"run {run_id} not found")
                if record.status == "in_progress":
                    if process_alive(record.process_id):
                        raise OrchestrationConflict(f"run {run_id} is still active in process {record.process_id}")
                    repo.finalize_run(run_id, status="stopped", error_message="interrupted; reconciled")
                    session.refresh(record)
                    logger.info("Reconciled stale run %s", run_id)
                return serialize_run(record)

    def install_signal_handlers(self) -> None:
        def _handle(signum: int, frame: Any) -> None:
            name = signal.Signals(signum).name
            logger.warning("Received %s; stopping after the current item", name)
            try:
                self.stop(reason=name)
            except NoActiveRun:
                pass

        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, _handle)

    def _resumable_record(self, repo: Repository, op: BatchOperation, run_id: int) -> RunRecord:
        record = repo.get_run_record(run_id)
        if record is None:
            raise RunNotFound(f"run {run_id} not found")
        if record.operation != op.name:
            raise InvalidBatchConfig(f"run {run_id} is a {record.operation} run, not {op.name}")
        if record.status == "completed":
            raise InvalidBatchConfig(f"run {run_id} already completed")
        if record.status == "in_progress" and process_alive(record.process_id):
            raise OrchestrationConflict(f"run {run_id} is still active in process {record.process_id}")
        others = [other for other in repo.in_progress_run_records(op.name) if other.id != run_id]
        if others:
            raise OrchestrationConflict(f"run {others[0].id} ({op.name}) is still in progress")
        return record

    def _execute(self, op: BatchOperation, options: Any, ctx: BatchContext) -> None:
        label = f"{op.name} run {ctx.run_id}" if ctx.run_id else op.name
        ctx.log(f"Starting {label}" + (f" from cursor {ctx.resume_cursor}" if ctx.resume_cursor else ""))
        try:
            outcome = op.run(ctx, options)
        except Exception as exc:
            logger.exception("Batch %s failed", label)
            self._finalize(ctx, "stopped", error=str(exc))
            with self._lock:
                self._error = str(exc)
                self._last_result = {"operation": op.name, "run_id": ctx.run_id, "status": "error", "error": str(exc)}
                self.stream.log(f"{label} failed: {exc}", level="error")
                self.stream.status("error", error=str(exc), operation=op.name)
                self._state = "idle"
                self._active = None
            self.stream.status("idle", operation=op.name)
            return

        final = "completed" if outcome.exhausted else "stopped"
        self._finalize(ctx, final)
        ctx.log(f"{label} {final}: {outcome.summary}")
        with self._lock:
            self._state = "idle"
            self._active = None
            self._last_result = {"operation": op.name, "run_id": ctx.run_id, "status": final, **outcome.summary}
        self.stream.status("idle", operation=op.name)

    def _finalize(self, ctx: BatchContext, status: str, *, error: str = "") -> None:
        if ctx.run_id is None:
            return
        try:
            with self.session_factory() as session:
                if not Repository(session).finalize_run(ctx.run_id, status=status, error_message=error):
                    logger.warning("Run %s was already finalized", ctx.run_id)
        except Exception:
            logger.exception("Could not finalize run %s", ctx.run_id)


def serialize_run(record: RunRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "operation": record.operation,
        "status": record.status,
        "items_processed": record.items_processed,
        "items_added": record.items_added,
        "last_cursor": record.last_cursor,
        "filters": record.filters_json or {},
        "max_items": record.max_items,
        "start_page": record.start_page,
        "current_page": record.current_page,
        "process_id": record.process_id,
        "error_message": record.error_message,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "last_activity_at": record.last_activity_at.isoformat() if record.last_activity_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }
