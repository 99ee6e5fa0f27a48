"""In-memory cache shared by every download job of the process.

The cache is split in independent namespaces, each with its own TTL, size
limit and lock, so sweeping or evicting one namespace never blocks lookups in
another. Entries expire lazily on ``get`` and eagerly on ``sweep``.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

FILES = "files"
HASHES = "hashes"
XML_DATA = "xml_data"
DUPLICATES = "duplicates"
NAMESPACES = (FILES, HASHES, XML_DATA, DUPLICATES)

_MISSING = object()


@dataclass(frozen=True)
class CachePolicy:
    ttl_seconds: float
    max_entries: int


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    hit_count: int = 0


class _Namespace:
    def __init__(self, name: str, policy: CachePolicy):
        self.name = name
        self.policy = policy
        self.entries: Dict[Hashable, CacheEntry] = {}
        self.lock = threading.Lock()

    def expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self.policy.ttl_seconds

    def enforce_max_size(self) -> None:
        excess = len(self.entries) - self.policy.max_entries
        if excess <= 0:
            return
        oldest = sorted(
            self.entries.items(), key=lambda kv: (kv[1].inserted_at, str(kv[0]))
        )
        for key, _ in oldest[:excess]:
            del self.entries[key]


class NamespacedCache:
    """TTL and capacity bounded key/value store with one region per namespace."""

    def __init__(
        self,
        policies: Dict[str, CachePolicy],
        sweep_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._namespaces = {name: _Namespace(name, p) for name, p in policies.items()}
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def _ns(self, namespace: str) -> _Namespace:
        try:
            return self._namespaces[namespace]
        except KeyError:
            raise KeyError(f"Namespace de cache desconhecido: {namespace}") from None

    @property
    def namespaces(self) -> tuple:
        return tuple(self._namespaces)

    def policy(self, namespace: str) -> CachePolicy:
        return self._ns(namespace).policy

    def put(self, namespace: str, key: Hashable, value: Any) -> None:
        ns = self._ns(namespace)
        with ns.lock:
            ns.entries[key] = CacheEntry(value=value, inserted_at=self._clock())
            ns.enforce_max_size()

    def get(self, namespace: str, key: Hashable, default: Any = None) -> Any:
        """Return the value stored under ``key`` or ``default`` when absent or stale."""
        ns = self._ns(namespace)
        with ns.lock:
            entry = ns.entries.get(key)
            if entry is None:
                return default
            if ns.expired(entry, self._clock()):
                del ns.entries[key]
                return default
            entry.hit_count += 1
            return entry.value

    def contains(self, namespace: str, key: Hashable) -> bool:
        return self.get(namespace, key, _MISSING) is not _MISSING

    def delete(self, namespace: str, key: Hashable) -> None:
        ns = self._ns(namespace)
        with ns.lock:
            ns.entries.pop(key, None)

    def size(self, namespace: str) -> int:
        ns = self._ns(namespace)
        with ns.lock:
            return len(ns.entries)

    def clear(self, namespace: str = "all") -> None:
        """Empty ``namespace`` or, with ``"all"``, every namespace."""
        targets = self._namespaces.values() if namespace == "all" else [self._ns(namespace)]
        for ns in targets:
            with ns.lock:
                ns.entries.clear()
        logger.info("Cache limpo: %s", namespace)

    def sweep(self) -> int:
        """Drop expired entries from every namespace. Returns how many were removed."""
        removed = 0
        for ns in self._namespaces.values():
            with ns.lock:
                now = self._clock()
                stale = [k for k, e in ns.entries.items() if ns.expired(e, now)]
                for key in stale:
                    del ns.entries[key]
            removed += len(stale)
        if removed:
            logger.debug(
                "Limpeza automática de cache: %d entradas removidas (%s)",
                removed,
                ", ".join(f"{name}={self.size(name)}" for name in self._namespaces),
            )
        return removed

    def stats(self) -> Dict[str, Dict[str, float]]:
        result = {}
        for name, ns in self._namespaces.items():
            with ns.lock:
                now = self._clock()
                entries = list(ns.entries.values())
            ages = [now - e.inserted_at for e in entries]
            result[name] = {
                "size": len(entries),
                "total_hits": sum(e.hit_count for e in entries),
                "average_age_seconds": sum(ages) / len(ages) if ages else 0.0,
            }
        return result

    def start(self) -> None:
        """Start the background sweep thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="nfse-cache-sweep", daemon=True
        )
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Erro na limpeza automática do cache")

    def __enter__(self) -> "NamespacedCache":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
