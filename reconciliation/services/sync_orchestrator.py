from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from reconciliation.config import settings
from reconciliation.db import SessionLocal
from reconciliation.services.order_sync_service import run_sync_job
from reconciliation.services.provider_factory import get_platform_provider

logger = logging.getLogger(__name__)

TRIGGER_QUEUED = 'queued'
TRIGGER_COMPLETED = 'completed'
TRIGGER_FAILED = 'failed'


@dataclass(frozen=True)
class TriggerResult:
    status: str
    run_id: int | None = None
    source: str | None = None
    result: dict | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            'status': self.status,
            'run_id': self.run_id,
            'source': self.source,
            'result': self.result,
            'error': self.error,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _spawn_thread(target: Callable[[], None], name: str) -> None:
    threading.Thread(target=target, name=name, daemon=True).start()


class SyncOrchestrator:
    """Single-flight runner for the sync job.

    Triggers that arrive while a run is in flight are coalesced: each finished
    run dispatches at most one follow-up run, whatever the number of callers.
    """

    def __init__(
        self,
        job: Callable[[], dict],
        *,
        spawn: Callable[[Callable[[], None], str], None] = _spawn_thread,
    ) -> None:
        self._job = job
        self._spawn = spawn
        self._lock = threading.Lock()
        self.running = False
        self.run_id = 0
        self.queued = False
        self.queued_source: str | None = None
        self.last_started_at: datetime | None = None
        self.last_finished_at: datetime | None = None
        self.last_source: str | None = None
        self.last_error: str | None = None
        self.last_result: dict | None = None

    def try_start(self, source: str) -> int | None:
        """Claim the run slot and return the new run id, or record a rerun request and return None."""
        with self._lock:
            if self.running:
                self.queued = True
                self.queued_source = source
                return None
            self.running = True
            self.run_id += 1
            self.last_started_at = _now()
            self.last_source = source
            return self.run_id

    def request_rerun(self, source: str) -> None:
        with self._lock:
            self.queued = True
            self.queued_source = source

    def finish(self, *, result: dict | None = None, error: str | None = None) -> str | None:
        """Release the run slot; return the source of a coalesced rerun to dispatch, if any."""
        with self._lock:
            self.running = False
            self.last_finished_at = _now()
            self.last_result = result
            self.last_error = error
            if not self.queued:
                return None
            source = self.queued_source or 'unknown'
            self.queued = False
            self.queued_source = None
            return source

    def trigger(self, source: str) -> TriggerResult:
        run_id = self.try_start(source)
        if run_id is None:
            logger.info('Sync already running, queued a rerun requested by %s', source)
            return TriggerResult(status=TRIGGER_QUEUED, source=source)
        return self.run_claimed(run_id, source)

    def run_claimed(self, run_id: int, source: str) -> TriggerResult:
        """Run the job for a slot already claimed with ``try_start``."""
        logger.info('Sync run %s started (%s)', run_id, source)
        result: dict | None = None
        error: str | None = None
        try:
            result = self._job()
        except Exception as exc:
            error = str(exc)
            logger.exception('Sync run %s failed', run_id)
        finally:
            rerun_source = self.finish(result=result, error=error)

        if rerun_source is not None:
            rerun_name = f'queued-from-{rerun_source}'
            logger.info('Dispatching coalesced sync rerun (%s)', rerun_name)
            self._spawn(lambda: self.trigger(rerun_name), rerun_name)

        if error is not None:
            return TriggerResult(status=TRIGGER_FAILED, run_id=run_id, source=source, error=error)
        logger.info('Sync run %s finished', run_id)
        return TriggerResult(status=TRIGGER_COMPLETED, run_id=run_id, source=source, result=result)

    def status(self) -> dict:
        with self._lock:
            return {
                'running': self.running,
                'run_id': self.run_id,
                'queued': self.queued,
                'queued_source': self.queued_source,
                'last_started_at': self.last_started_at.isoformat() if self.last_started_at else None,
                'last_finished_at': self.last_finished_at.isoformat() if self.last_finished_at else None,
                'last_source': self.last_source,
                'last_error': self.last_error,
                'last_result': self.last_result,
            }


class SyncScheduler:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        initial_delay_seconds: float | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.initial_delay_seconds = (
            settings.sync_initial_delay_seconds if initial_delay_seconds is None else initial_delay_seconds
        )
        self.interval_seconds = settings.sync_interval_seconds if interval_seconds is None else interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _run(self) -> None:
        if self._stop.wait(self.initial_delay_seconds):
            return
        while not self._stop.is_set():
            self.orchestrator.trigger('scheduler')
            if self._stop.wait(self.interval_seconds):
                return

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='sync-scheduler', daemon=True)
        self._thread.start()
        logger.info(
            'Sync scheduler started: first run in %ss, then every %ss',
            self.initial_delay_seconds,
            self.interval_seconds,
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None


def _default_job() -> dict:
    return run_sync_job(SessionLocal, get_platform_provider())


orchestrator = SyncOrchestrator(_default_job)
