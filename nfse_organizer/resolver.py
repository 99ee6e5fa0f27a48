from __future__ import annotations

import enum
import logging
import threading
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .artifact import Artifact
from .cache import NamespacedCache, HASHES, DUPLICATES

logger = logging.getLogger(__name__)

Probe = Callable[[str], Optional[str]]


class Verdict(str, enum.Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class Classification:
    verdict: Verdict
    incoming_hash: str
    existing_hash: Optional[str] = None
    cached: bool = False


class DuplicateResolver:
    """Decide whether an artifact is new, already stored, or clashes with a stored one.

    Fingerprints already placed are remembered in the ``hashes`` namespace
    keyed by placement path; verdicts are remembered in the ``duplicates``
    namespace keyed by ``"{fingerprint}:{path}"``. When the hash for a path
    is not cached, an optional ``probe`` callable can be given to look at the
    persisted copy instead.

    Callers that act on a verdict (write the file) must hold :meth:`locked`
    for the path while classifying and acting, so two jobs cannot both see
    ``NEW`` for the same path.
    """

    def __init__(self, cache: NamespacedCache, lock_stripes: int = 64):
        self.cache = cache
        self._locks = [threading.RLock() for _ in range(lock_stripes)]

    @contextmanager
    def locked(self, path: str) -> Iterator[None]:
        lock = self._locks[zlib.crc32(path.encode("utf-8")) % len(self._locks)]
        with lock:
            yield

    @staticmethod
    def decision_key(content_hash: str, path: str) -> str:
        return f"{content_hash}:{path}"

    def classify(
        self,
        artifact: Artifact,
        path: str,
        probe: Optional[Probe] = None,
    ) -> Classification:
        incoming = artifact.content_hash
        key = self.decision_key(incoming, path)
        with self.locked(path):
            cached = self.cache.get(DUPLICATES, key)
            if cached is not None:
                verdict, existing = cached
                return Classification(verdict, incoming, existing, cached=True)

            existing = self.cache.get(HASHES, path)
            if existing is None and probe is not None:
                existing = probe(path)
                if existing is not None:
                    self.cache.put(HASHES, path, existing)

            if existing is None:
                self.cache.put(HASHES, path, incoming)
                # later lookups of the same bytes at this path are duplicates
                self.cache.put(DUPLICATES, key, (Verdict.DUPLICATE, incoming))
                return Classification(Verdict.NEW, incoming)
            if existing == incoming:
                verdict = Verdict.DUPLICATE
            else:
                verdict = Verdict.CONFLICT
                logger.warning(
                    "Conflito em %s: conteúdo existente %s difere do novo %s",
                    path,
                    existing[:8],
                    incoming[:8],
                )
            self.cache.put(DUPLICATES, key, (verdict, existing))
            return Classification(verdict, incoming, existing)

    def forget(self, artifact: Artifact, path: str) -> None:
        """Undo the bookkeeping of a ``NEW`` verdict whose write did not happen."""
        with self.locked(path):
            if self.cache.get(HASHES, path) == artifact.content_hash:
                self.cache.delete(HASHES, path)
            self.cache.delete(DUPLICATES, self.decision_key(artifact.content_hash, path))
