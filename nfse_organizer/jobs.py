from __future__ import annotations

import datetime
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .artifact import Competencia
from .cache import NamespacedCache
from .errors import RegistryFull, mask_cnpj
from .fetcher import Fetcher
from .tracker import DownloadJobTracker, JobRunner, JobState

logger = logging.getLogger(__name__)


@dataclass
class _Execution:
    id: int
    tracker: DownloadJobTracker
    fetcher: Fetcher
    stop: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None


class JobRegistry:
    """Runs download jobs in the background and answers status queries.

    This is the surface the dashboard polls: ``status(execution_id)`` returns
    the job snapshot with ``status`` and ``progress`` keys.
    """

    def __init__(
        self,
        runner: JobRunner,
        cache: NamespacedCache,
        max_concurrent_jobs: int = 4,
        max_retries: int = 3,
        max_pending_jobs: int = 50,
    ):
        self.runner = runner
        self.cache = cache
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_pending_jobs = max_pending_jobs
        self.max_retries = max_retries
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_jobs, thread_name_prefix="nfse-job"
        )
        self._executions: Dict[int, _Execution] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _unfinished(self) -> int:
        return sum(1 for e in self._executions.values() if not e.tracker.terminal)

    def start(
        self,
        taxpayer_id: str,
        fetcher: Fetcher,
        start_date: Optional[datetime.date] = None,
        end_date: Optional[datetime.date] = None,
    ) -> int:
        """Queue a job for ``taxpayer_id`` and return its execution id."""
        with self._lock:
            if self._unfinished() >= self.max_pending_jobs:
                raise RegistryFull(
                    f"Limite de execuções pendentes atingido ({self.max_pending_jobs})"
                )
            self._counter += 1
            tracker = DownloadJobTracker(
                taxpayer_id, start_date, end_date, max_retries=self.max_retries
            )
            execution = _Execution(self._counter, tracker, fetcher)
            self._executions[execution.id] = execution
        logger.info(
            "Nova execução %s para CNPJ %s (%s a %s)",
            execution.id,
            mask_cnpj(taxpayer_id),
            start_date,
            end_date,
        )
        execution.future = self._executor.submit(self._execute, execution)
        return execution.id

    def _execute(self, execution: _Execution) -> Dict[str, Any]:
        running: Callable[[], bool] = lambda: not execution.stop.is_set()
        try:
            return self.runner.run(execution.tracker, execution.fetcher, running=running)
        except Exception as e:
            logger.exception("Execução %s falhou", execution.id)
            if not execution.tracker.terminal:
                execution.tracker.on_fatal_error(e)
            return execution.tracker.snapshot()
        finally:
            close = getattr(execution.fetcher, "close", None)
            if close is not None:
                close()

    def _get(self, execution_id: int) -> _Execution:
        try:
            return self._executions[execution_id]
        except KeyError:
            raise KeyError(f"Execução não encontrada: {execution_id}") from None

    def status(self, execution_id: int) -> Dict[str, Any]:
        execution = self._get(execution_id)
        snap = execution.tracker.snapshot()
        snap["id"] = execution.id
        return snap

    def _params(self, tracker: DownloadJobTracker) -> Dict[str, Any]:
        return {
            "cnpj": mask_cnpj(tracker.taxpayer_id),
            "start_date": tracker.start_date.isoformat() if tracker.start_date else None,
            "end_date": tracker.end_date.isoformat() if tracker.end_date else None,
        }

    def list_executions(self) -> List[Dict[str, Any]]:
        with self._lock:
            executions = list(self._executions.values())
        result = []
        for execution in executions:
            snap = execution.tracker.snapshot()
            snap["id"] = execution.id
            snap["params"] = self._params(execution.tracker)
            result.append(snap)
        return result

    def cancel(self, execution_id: int) -> bool:
        """Ask a job to stop. Returns ``False`` when it had already finished."""
        execution = self._get(execution_id)
        if execution.tracker.terminal:
            return False
        execution.stop.set()
        if execution.tracker.state is JobState.QUEUED:
            execution.tracker.cancel()
        logger.info("Execução %s cancelada", execution_id)
        return True

    def archive(self, execution_id: int) -> Dict[str, Any]:
        """Remove a finished job and return its final snapshot."""
        with self._lock:
            execution = self._get(execution_id)
            if not execution.tracker.terminal:
                raise ValueError(f"Execução {execution_id} ainda não finalizada")
            del self._executions[execution_id]
        snap = execution.tracker.snapshot()
        snap["id"] = execution_id
        return snap

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            snaps = [e.tracker.snapshot() for e in self._executions.values()]
        durations = [s["duration_seconds"] for s in snaps if s["duration_seconds"] is not None]
        return {
            "total": len(snaps),
            "running": sum(1 for s in snaps if s["status"] == JobState.RUNNING.value),
            "completed": sum(1 for s in snaps if s["status"] == JobState.COMPLETED.value),
            "failed": sum(1 for s in snaps if s["status"] == JobState.FAILED.value),
            "written_total": sum(s["progress"]["written"] for s in snaps),
            "average_duration_seconds": sum(durations) / len(durations) if durations else 0,
            "max_concurrent": self.max_concurrent_jobs,
            "cache": self.cache.stats(),
        }

    def taxpayer_stats(
        self, taxpayer_id: str, competencia: Optional[Competencia] = None
    ) -> Dict[str, Any]:
        """Executions and, for ``competencia``, stored files of one taxpayer."""
        with self._lock:
            snaps = [
                e.tracker.snapshot()
                for e in self._executions.values()
                if e.tracker.taxpayer_id == taxpayer_id
            ]
        files = []
        if competencia is not None:
            files = self.runner.placer.list_files(taxpayer_id, competencia)
        return {
            "cnpj": mask_cnpj(taxpayer_id),
            "executions": len(snaps),
            "written_total": sum(s["progress"]["written"] for s in snaps),
            "conflicted_total": sum(s["progress"]["conflicted"] for s in snaps),
            "file_count": len(files),
            "total_size": sum(f.size for f in files),
            "files": [{"name": f.name, "size": f.size} for f in files],
        }

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job is done. Returns ``False`` on timeout."""
        with self._lock:
            futures = [e.future for e in self._executions.values() if e.future is not None]
        _, pending = wait_futures(futures, timeout=timeout)
        return not pending

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Encerrando gerenciador de execuções")
        if not wait:
            with self._lock:
                for execution in self._executions.values():
                    execution.stop.set()
        self._executor.shutdown(wait=wait)
