from __future__ import annotations

import datetime
import enum
import logging
import os
import posixpath
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .artifact import Artifact, Competencia, XmlMetadataReader, fingerprint
from .cache import NamespacedCache, FILES, XML_DATA
from .errors import PlacementError, is_systemic, mask_cnpj
from .resolver import Classification, DuplicateResolver, Verdict

logger = logging.getLogger(__name__)

INVOICE_INDEX_PREFIX = "invoices:"


def placement_path(competencia: Competencia, taxpayer_id: str, source_identifier: str) -> str:
    """Return ``{year}/{MM}{year}/{taxpayer_id}/{filename}`` relative to the storage root."""
    filename = posixpath.basename(source_identifier.replace("\\", "/"))
    if not filename or filename in (".", ".."):
        raise ValueError(f"Nome de arquivo inválido: {source_identifier!r}")
    year = f"{competencia.year:04d}"
    return posixpath.join(year, f"{competencia.month:02d}{year}", taxpayer_id, filename)


def conflict_filename(artifact: Artifact) -> str:
    """Alternative file name for a conflicting artifact, for manual review."""
    stem, dot, suffix = artifact.source_identifier.rpartition(".")
    if not dot:
        stem, suffix = suffix, ""
    return f"{stem}_{artifact.content_hash[:8]}{dot}{suffix}"


@dataclass(frozen=True)
class StoredFile:
    name: str
    size: int
    modified: datetime.datetime


class LocalStorage:
    """Filesystem primitives rooted at ``root``. Paths are relative, ``/`` separated."""

    def __init__(self, root: str):
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        return self.root.joinpath(*path.split("/"))

    def file_exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_file(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()

    def list_dir(self, path: str) -> List[str]:
        target = self.resolve(path)
        if not target.is_dir():
            return []
        return sorted(
            p.name for p in target.iterdir() if p.is_file() and not p.name.startswith(".")
        )

    def list_files(self, path: str) -> List[StoredFile]:
        """Details of the XML files directly under ``path``."""
        target = self.resolve(path)
        files = []
        for name in self.list_dir(path):
            if not name.lower().endswith(".xml"):
                continue
            try:
                st = (target / name).stat()
            except FileNotFoundError:
                continue
            files.append(
                StoredFile(name, st.st_size, datetime.datetime.fromtimestamp(st.st_mtime))
            )
        return files

    def write_file(self, path: str, data: bytes) -> None:
        """Create ``path`` with ``data``, creating parent directories.

        The bytes go to a hidden temporary file in the target directory which
        is then hard linked as ``path``, so readers never see a partial file
        and an existing file is never replaced: :class:`FileExistsError` is
        raised instead.
        """
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = tempfile.NamedTemporaryFile(
            dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
        )
        try:
            with tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.link(tmp.name, target)
        finally:
            os.remove(tmp.name)


class Outcome(str, enum.Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    CONFLICTED = "conflicted"


@dataclass(frozen=True)
class PlacementResult:
    outcome: Outcome
    path: str
    reason: Optional[str] = None
    existing_hash: Optional[str] = None
    incoming_hash: Optional[str] = None
    suggested_name: Optional[str] = None


class ArtifactPlacer:
    """Files artifacts under their canonical path, at most once per content.

    With a ``reader`` the placer also skips an artifact whose invoice number
    and verification code match a file already stored, under any name, in
    the same taxpayer directory.
    """

    def __init__(
        self,
        storage: LocalStorage,
        resolver: DuplicateResolver,
        reader: Optional[XmlMetadataReader] = None,
    ):
        self.storage = storage
        self.resolver = resolver
        self.reader = reader
        self.cache: NamespacedCache = resolver.cache

    def path_for(self, artifact: Artifact) -> str:
        return placement_path(artifact.competencia, artifact.taxpayer_id, artifact.source_identifier)

    def _listing(self, directory: str) -> frozenset:
        names = self.cache.get(FILES, directory)
        if names is None:
            names = frozenset(self.storage.list_dir(directory))
            self.cache.put(FILES, directory, names)
        return names

    def _invalidate(self, directory: str) -> None:
        self.cache.delete(FILES, directory)
        self.cache.delete(XML_DATA, INVOICE_INDEX_PREFIX + directory)

    def probe(self, path: str) -> Optional[str]:
        """Fingerprint of the file already stored at ``path``, if any."""
        directory, filename = posixpath.split(path)
        if filename not in self._listing(directory):
            return None
        try:
            return fingerprint(self.storage.read_file(path))
        except FileNotFoundError:
            self._invalidate(directory)
            return None

    def _invoice_index(self, directory: str) -> Dict[Tuple[str, str], str]:
        key = INVOICE_INDEX_PREFIX + directory
        index = self.cache.get(XML_DATA, key)
        if index is None:
            index = {}
            for name in sorted(self._listing(directory)):
                if not name.lower().endswith(".xml"):
                    continue
                try:
                    meta = self.reader.read(self.storage.read_file(posixpath.join(directory, name)))
                except FileNotFoundError:
                    continue
                if meta.numero and meta.codigo_verificacao:
                    index.setdefault((meta.numero, meta.codigo_verificacao), name)
            self.cache.put(XML_DATA, key, index)
        return index

    def _invoice_key(self, artifact: Artifact) -> Optional[Tuple[str, str]]:
        if self.reader is None:
            return None
        meta = self.reader.read(artifact.raw_bytes, artifact.content_hash)
        if not (meta.numero and meta.codigo_verificacao):
            return None
        return meta.numero, meta.codigo_verificacao

    def same_invoice(self, artifact: Artifact, path: str) -> Optional[str]:
        """Name of a stored file holding the same invoice as ``artifact``, if any."""
        key = self._invoice_key(artifact)
        if key is None:
            return None
        directory, filename = posixpath.split(path)
        existing = self._invoice_index(directory).get(key)
        if existing is None or existing == filename:
            return None
        return existing

    def _remember_invoice(self, artifact: Artifact, path: str) -> None:
        key = self._invoice_key(artifact)
        directory, filename = posixpath.split(path)
        index = self.cache.get(XML_DATA, INVOICE_INDEX_PREFIX + directory)
        if key is not None and index is not None:
            index.setdefault(key, filename)

    def _existing(self, artifact: Artifact, path: str, decision: Classification) -> PlacementResult:
        if decision.verdict is Verdict.DUPLICATE:
            logger.info("Duplicata ignorada: %s", path)
            return PlacementResult(
                Outcome.SKIPPED,
                path,
                reason="duplicate",
                existing_hash=decision.existing_hash,
                incoming_hash=decision.incoming_hash,
            )
        return PlacementResult(
            Outcome.CONFLICTED,
            path,
            reason="conflict",
            existing_hash=decision.existing_hash,
            incoming_hash=decision.incoming_hash,
            suggested_name=conflict_filename(artifact),
        )

    def place(self, artifact: Artifact) -> PlacementResult:
        path = self.path_for(artifact)
        directory = posixpath.dirname(path)
        with self.resolver.locked(path):
            decision = self.resolver.classify(artifact, path, probe=self.probe)
            if decision.verdict is not Verdict.NEW:
                return self._existing(artifact, path, decision)
            existing = self.same_invoice(artifact, path)
            if existing is not None:
                self.resolver.forget(artifact, path)
                logger.info("Duplicata por número e código de verificação: %s (%s)", path, existing)
                return PlacementResult(
                    Outcome.SKIPPED,
                    path,
                    reason="same_invoice",
                    incoming_hash=artifact.content_hash,
                    suggested_name=existing,
                )
            try:
                self.storage.write_file(path, artifact.raw_bytes)
            except FileExistsError:
                # stale listing or hash cache: judge against the stored copy
                self.resolver.forget(artifact, path)
                self._invalidate(directory)
                decision = self.resolver.classify(artifact, path, probe=self.probe)
                if decision.verdict is Verdict.NEW:
                    self.resolver.forget(artifact, path)
                    raise PlacementError(f"Arquivo alterado durante a gravação: {path}", path)
                return self._existing(artifact, path, decision)
            except OSError as e:
                self.resolver.forget(artifact, path)
                logger.error("Falha ao gravar %s: %s", path, e)
                raise PlacementError(
                    f"Falha ao gravar {path}: {e}", path, systemic=is_systemic(e)
                ) from e
            self.cache.delete(FILES, directory)
            self._remember_invoice(artifact, path)
        logger.info(
            "XML salvo: %s (CNPJ %s, competência %s)",
            path,
            mask_cnpj(artifact.taxpayer_id),
            artifact.competencia,
        )
        return PlacementResult(Outcome.WRITTEN, path, incoming_hash=artifact.content_hash)

    def list_files(self, taxpayer_id: str, competencia: Competencia) -> List[StoredFile]:
        """XML files stored for ``taxpayer_id`` in ``competencia``."""
        directory = posixpath.dirname(placement_path(competencia, taxpayer_id, "_"))
        return self.storage.list_files(directory)
