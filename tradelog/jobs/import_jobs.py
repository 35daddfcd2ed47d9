"""
Background import jobs with a watchdog.

``submit`` returns a job id immediately; the import runs on a thread pool
detached from the caller. A watchdog timer fails a job that runs past its
window with ImportTimeoutError and sets the job's cancel event so the
importer stops at the next symbol. Trades streamed before the timeout stay
on the job; nothing is rolled back. Completion and failure are reported
through ``on_finished(job)``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .. import config
from ..errors import ImportTimeoutError, TradelogError
from ..importer import TradeImporter
from ..models import ImportResult, RoundTripTrade

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class ImportJob:
    job_id: str
    user_id: Optional[str] = None
    broker: str = "auto"
    status: str = QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    trades: list[RoundTripTrade] = field(default_factory=list)
    result: Optional[ImportResult] = None
    error: Optional[BaseException] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)

    @property
    def finished(self) -> bool:
        return self.status in (COMPLETED, FAILED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "broker": self.result.broker if self.result else self.broker,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "trades": len(self.trades),
            "error": str(self.error) if self.error else None,
        }


class ImportJobRunner:
    def __init__(
        self,
        importer: TradeImporter,
        max_workers: int = config.IMPORT_WORKERS,
        timeout: float = config.IMPORT_TIMEOUT_SEC,
        on_finished: Optional[Callable[[ImportJob], None]] = None,
    ) -> None:
        self.importer = importer
        self.timeout = timeout
        self.on_finished = on_finished
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="import-job")
        self._jobs: dict[str, ImportJob] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        content: bytes | str,
        broker: str = "auto",
        user_id: Optional[str] = None,
        existing_positions: Optional[dict] = None,
        existing_executions: Optional[list] = None,
    ) -> str:
        job = ImportJob(job_id=uuid.uuid4().hex, user_id=user_id, broker=broker)
        with self._lock:
            self._jobs[job.job_id] = job
        self._executor.submit(
            self._run, job, content, broker, existing_positions, existing_executions
        )
        logger.info("[JOB] Submitted import %s (user=%s, broker=%s)", job.job_id, user_id, broker)
        return job.job_id

    def get(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for job in self._jobs.values():
                if not job.finished:
                    job.cancel_event.set()
        self._executor.shutdown(wait=wait)
        logger.info("[JOB] Import runner shut down")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, job: ImportJob, content, broker, existing_positions, existing_executions) -> None:
        with self._lock:
            job.status = RUNNING
            job.started_at = datetime.now(timezone.utc)

        watchdog = threading.Timer(self.timeout, self._expire, args=(job,))
        watchdog.daemon = True
        watchdog.start()

        def stream(trades: list[RoundTripTrade]) -> None:
            with self._lock:
                if job.status == RUNNING:
                    job.trades.extend(trades)

        try:
            result = self.importer.run(
                content,
                broker=broker,
                existing_positions=existing_positions,
                existing_executions=existing_executions,
                user_id=job.user_id,
                on_trades=stream,
                cancel_event=job.cancel_event,
            )
        except TradelogError as e:
            logger.warning("[JOB] Import %s failed: %s", job.job_id, e)
            self._finish(job, FAILED, error=e)
        except Exception as e:
            logger.exception("[JOB] Import %s crashed", job.job_id)
            self._finish(job, FAILED, error=e)
        else:
            self._finish(job, COMPLETED, result=result)
        finally:
            watchdog.cancel()

    def _expire(self, job: ImportJob) -> None:
        job.cancel_event.set()
        if self._finish(job, FAILED, error=ImportTimeoutError(job.job_id, self.timeout)):
            logger.error(
                "[JOB] Import %s timed out after %.0fs, keeping %d streamed trades",
                job.job_id, self.timeout, len(job.trades),
            )

    def _finish(
        self,
        job: ImportJob,
        status: str,
        result: Optional[ImportResult] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        """Move a job to a final state once; later calls are ignored."""
        with self._lock:
            if job.finished:
                return False
            job.status = status
            job.result = result
            job.error = error
            job.finished_at = datetime.now(timezone.utc)
            if result is not None:
                job.trades = list(result.trades)

        if status == COMPLETED:
            logger.info("[JOB] Import %s completed: %d trades", job.job_id, len(job.trades))
        if self.on_finished is not None:
            try:
                self.on_finished(job)
            except Exception:
                logger.warning("[JOB] on_finished callback failed for %s", job.job_id, exc_info=True)
        job.done.set()
        return True
