"""Lifecycle and progress accounting of a single download job."""
from __future__ import annotations

import datetime
import enum
import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    FatalFetchError,
    InvalidTransition,
    PlacementError,
    TransientFetchError,
    classify_exception,
    mask_cnpj,
)
from .artifact import Artifact
from .fetcher import Fetcher, Page
from .placer import ArtifactPlacer, Outcome, PlacementResult

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass
class JobProgress:
    current_page: int = 0
    total_pages: int = 0
    written: int = 0
    skipped_duplicate: int = 0
    conflicted: int = 0
    failed: int = 0


def _now() -> str:
    return datetime.datetime.now().isoformat(timespec="seconds")


class DownloadJobTracker:
    """State machine ``queued -> running -> completed | failed`` for one job.

    Terminal states are absorbing. The tracker is fed by whoever drives the
    fetcher (see :class:`JobRunner`) and is safe to read from other threads
    while the job runs.
    """

    def __init__(
        self,
        taxpayer_id: str,
        start_date: Optional[datetime.date] = None,
        end_date: Optional[datetime.date] = None,
        max_retries: int = 3,
    ):
        self.taxpayer_id = taxpayer_id
        self.start_date = start_date
        self.end_date = end_date
        self.max_retries = max_retries
        self.state = JobState.QUEUED
        self.progress = JobProgress()
        self.error: Optional[str] = None
        self.errors: List[str] = []
        self.conflicts: List[Dict[str, Any]] = []
        self.started_at: Optional[str] = None
        self.finished_at: Optional[str] = None
        self._started_clock: Optional[float] = None
        self.duration_seconds: Optional[float] = None
        self._retry_page: Optional[int] = None
        self._retry_count = 0
        self._lock = threading.RLock()

    def _transition(self, new_state: JobState) -> None:
        if self.state.terminal:
            raise InvalidTransition(
                f"Execução já finalizada ({self.state.value}), não pode ir para {new_state.value}"
            )
        logger.debug("Job %s: %s -> %s", mask_cnpj(self.taxpayer_id), self.state.value, new_state.value)
        if new_state is JobState.RUNNING:
            self.started_at = _now()
            self._started_clock = time.monotonic()
        elif new_state.terminal:
            self.finished_at = _now()
            if self._started_clock is not None:
                self.duration_seconds = round(time.monotonic() - self._started_clock, 3)
        self.state = new_state

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def _fail(self) -> None:
        if self.state is JobState.QUEUED:
            self._transition(JobState.RUNNING)
        self._transition(JobState.FAILED)

    def on_page(self, page: Page) -> None:
        with self._lock:
            if self.state is JobState.QUEUED:
                self._transition(JobState.RUNNING)
            elif self.state.terminal:
                raise InvalidTransition("Página recebida após o fim da execução")
            self.progress.current_page = page.number
            total = page.total_pages or 0
            self.progress.total_pages = max(self.progress.total_pages, total, page.number)
            self._retry_page = page.number
            self._retry_count = 0

    def on_placement(self, result: PlacementResult) -> None:
        with self._lock:
            if result.outcome is Outcome.WRITTEN:
                self.progress.written += 1
            elif result.outcome is Outcome.SKIPPED:
                self.progress.skipped_duplicate += 1
            else:
                self.progress.conflicted += 1
                self.conflicts.append(
                    {
                        "path": result.path,
                        "existing_hash": result.existing_hash,
                        "incoming_hash": result.incoming_hash,
                        "suggested_name": result.suggested_name,
                    }
                )

    def on_placement_error(self, error: PlacementError) -> None:
        with self._lock:
            self.progress.failed += 1
            self.errors.append(str(error))
            if error.systemic and not self.state.terminal:
                self.error = str(error)
                self._transition(JobState.FAILED)

    def on_transient_error(self, page_number: int, error: Exception) -> bool:
        """Count a failed attempt at ``page_number``. Returns whether to retry."""
        with self._lock:
            if self.state.terminal:
                return False
            if self._retry_page != page_number:
                self._retry_page = page_number
                self._retry_count = 0
            self._retry_count += 1
            self.errors.append(str(error))
            if self._retry_count <= self.max_retries:
                logger.warning(
                    "Falha transitória na página %s (tentativa %s/%s): %s",
                    page_number,
                    self._retry_count,
                    self.max_retries,
                    error,
                )
                return True
            self.error = (
                f"Limite de {self.max_retries} tentativas excedido na página {page_number}: {error}"
            )
            self._fail()
            return False

    def on_fatal_error(self, error: Exception) -> None:
        with self._lock:
            if self.state.terminal:
                self.errors.append(str(error))
                return
            self._fail()
            self.error = str(error)
            self.errors.append(str(error))
            logger.error("Execução para CNPJ %s falhou: %s", mask_cnpj(self.taxpayer_id), error)

    def on_finished(self) -> None:
        with self._lock:
            if self.state is JobState.QUEUED:
                self._transition(JobState.RUNNING)
            self._transition(JobState.COMPLETED)

    def cancel(self, reason: str = "Execução cancelada pelo usuário") -> bool:
        with self._lock:
            if self.state.terminal:
                return False
            self.error = reason
            self._transition(JobState.FAILED)
            return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self.state.value,
                "progress": asdict(self.progress),
                "error": self.error,
                "errors": list(self.errors),
                "conflicts": list(self.conflicts),
                "started_at": self.started_at,
                "finished_at": self.finished_at,
                "duration_seconds": self.duration_seconds,
            }


class JobRunner:
    """Drives a fetcher page by page and feeds the tracker."""

    def __init__(
        self,
        placer: ArtifactPlacer,
        retry_delay_seconds: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.placer = placer
        self.retry_delay_seconds = retry_delay_seconds
        self.sleep = sleep

    def _fetch(self, tracker: DownloadJobTracker, fetcher: Fetcher, page_number: int) -> Optional[Page]:
        while True:
            try:
                return fetcher.fetch_page(page_number)
            except TransientFetchError as e:
                if not tracker.on_transient_error(page_number, e):
                    return None
            except FatalFetchError as e:
                tracker.on_fatal_error(e)
                return None
            except Exception as e:
                error = classify_exception(e, page_number)
                if isinstance(error, TransientFetchError):
                    if not tracker.on_transient_error(page_number, error):
                        return None
                else:
                    tracker.on_fatal_error(error)
                    return None
            self.sleep(self.retry_delay_seconds)

    @staticmethod
    def _commit(fetcher: Fetcher, page: Page, unplaced: List[Artifact]) -> None:
        commit = getattr(fetcher, "commit", None)
        if commit is not None:
            commit(page, [a.sequence_number for a in unplaced if a.sequence_number is not None])

    def run(
        self,
        tracker: DownloadJobTracker,
        fetcher: Fetcher,
        running: Callable[[], bool] = lambda: True,
    ) -> Dict[str, Any]:
        """Run ``tracker``'s job to a terminal state and return its snapshot.

        ``running`` is checked before each page and between artifacts; when it
        returns ``False`` the job is cancelled. A write already started always
        finishes. After each page the fetcher's ``commit`` (when it has one)
        is told which artifacts were left without a placement outcome.
        """
        cnpj = mask_cnpj(tracker.taxpayer_id)
        logger.info("Iniciando download para CNPJ %s", cnpj)
        page_number = 1
        while not tracker.terminal:
            if not running():
                tracker.cancel()
                break
            page = self._fetch(tracker, fetcher, page_number)
            if page is None or tracker.terminal:
                break
            tracker.on_page(page)
            unplaced = []
            for index, artifact in enumerate(page.artifacts):
                if not running():
                    tracker.cancel()
                    unplaced.extend(page.artifacts[index:])
                    break
                try:
                    tracker.on_placement(self.placer.place(artifact))
                except PlacementError as e:
                    unplaced.append(artifact)
                    tracker.on_placement_error(e)
                if tracker.terminal:
                    unplaced.extend(page.artifacts[index + 1:])
                    break
            self._commit(fetcher, page, unplaced)
            if tracker.terminal:
                break
            if not page.has_more:
                tracker.on_finished()
                break
            page_number += 1
        snap = tracker.snapshot()
        logger.info(
            "Download para CNPJ %s finalizado: %s, gravados=%s, duplicados=%s, conflitos=%s",
            cnpj,
            snap["status"],
            snap["progress"]["written"],
            snap["progress"]["skipped_duplicate"],
            snap["progress"]["conflicted"],
        )
        return snap
