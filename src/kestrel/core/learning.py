from __future__ import annotations

import logging
from collections.abc import Callable
from queue import Queue
from threading import Condition, Lock, Thread
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from kestrel.core.rejections import convert_patterns_to_adjustments, keyword_analysis
from kestrel.core.weights import WeightManager
from kestrel.db.repositories import Repository, fit_from_job
from kestrel.types import FitAssessment, PatternSignal, RejectionAnalysis

logger = logging.getLogger(__name__)


class RejectionAnalyst(Protocol):
    def analyze_rejection(
        self, *, reason: str, title: str, company: str, fit: FitAssessment
    ) -> RejectionAnalysis: ...


def company_signal(reason: str, company: str) -> PatternSignal | None:
    if company and company.lower() in reason.lower():
        return PatternSignal(type="company_name", value=company.lower(), confidence=0.9)
    return None


class RejectionLearner:
    """Turns one rejected job into pattern counts and weight-ledger entries."""

    def __init__(self, session: Session, *, analyst: RejectionAnalyst | None = None, default_profile: str = "core"):
        self.repo = Repository(session)
        self.weights = WeightManager(session)
        self.analyst = analyst
        self.default_profile = default_profile

    def learn(self, job_id: str) -> RejectionAnalysis | None:
        job = self.repo.get_job(job_id)
        if job is None:
            raise ValueError(f"job {job_id} not found")
        reason = (job.rejection_reason or "").strip()
        if job.status != "rejected" or not reason:
            logger.info("Job %s has no rejection to learn from", job_id)
            return None

        analysis = self._analyze(reason, job.title, job.company, fit_from_job(job))
        patterns = [
            pattern.model_copy(update={"value": pattern.value.strip().lower()}) if pattern.type == "company_name" else pattern
            for pattern in analysis.patterns
        ]
        signal = company_signal(reason, job.company)
        if signal is not None and not any(p.type == signal.type and p.value == signal.value for p in patterns):
            patterns.append(signal)

        for pattern in patterns:
            mapped = convert_patterns_to_adjustments([pattern])
            self.repo.upsert_rejection_pattern(
                pattern_type=pattern.type,
                pattern_value=pattern.value,
                weight_adjustment=sum(item.adjustment for item in mapped),
                profile_category=mapped[0].category if mapped else None,
            )

        profile = job.profile or self.default_profile
        applied = 0
        for suggestion in analysis.suggested_adjustments:
            entry = self.weights.apply_adjustment(
                profile=profile,
                category=suggestion.category,
                adjustment=suggestion.adjustment,
                reason=suggestion.reason or reason,
                rejection_id=job.id,
            )
            applied += entry is not None

        self.repo.mark_rejections_processed([job.id])
        self.repo.log_step(
            job.id,
            "rejection_learning",
            ok=True,
            log=f"patterns={len(patterns)} adjustments={applied}",
        )
        logger.info("Learned from rejection job_id=%s patterns=%s adjustments=%s", job.id, len(patterns), applied)
        return analysis

    def _analyze(self, reason: str, title: str, company: str, fit: FitAssessment) -> RejectionAnalysis:
        if self.analyst is None:
            return keyword_analysis(reason)
        try:
            return self.analyst.analyze_rejection(reason=reason, title=title, company=company, fit=fit)
        except Exception as exc:
            logger.warning("Rejection analysis failed, using keyword analysis: %s", exc)
            return keyword_analysis(reason)


_STOP = object()


class RejectionLearningQueue:
    """Background worker that feeds rejected jobs to the learner.

    Failures are logged and counted here; they never reach the caller that
    submitted the job.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        *,
        analyst_factory: Callable[[], RejectionAnalyst | None] | None = None,
        default_profile: str = "core",
    ):
        self.session_factory = session_factory
        self.analyst_factory = analyst_factory
        self.default_profile = default_profile
        self.processed = 0
        self.failed = 0
        self.last_error: str | None = None
        self._queue: Queue[Any] = Queue()
        self._pending = 0
        self._idle = Condition()
        self._lock = Lock()
        self._thread: Thread | None = None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = Thread(target=self._worker, name="rejection-learning", daemon=True)
            self._thread.start()

    def submit(self, job_id: str) -> None:
        self.start()
        with self._idle:
            self._pending += 1
        self._queue.put(job_id)

    def join(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def stop(self, timeout: float | None = None) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def stats(self) -> dict[str, Any]:
        with self._idle:
            pending = self._pending
        return {
            "pending": pending,
            "processed": self.processed,
            "failed": self.failed,
            "last_error": self.last_error,
            "running": self._thread is not None and self._thread.is_alive(),
        }

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._process(item)
                self.processed += 1
            except Exception as exc:
                self.failed += 1
                self.last_error = f"{item}: {exc}"
                logger.exception("Rejection learning failed job_id=%s", item)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _process(self, job_id: str) -> None:
        analyst = self.analyst_factory() if self.analyst_factory else None
        with self.session_factory() as session:
            RejectionLearner(session, analyst=analyst, default_profile=self.default_profile).learn(job_id)
