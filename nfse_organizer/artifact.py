from __future__ import annotations

import datetime
import hashlib
import logging
from dataclasses import dataclass, field
from typing import NamedTuple, Optional
import xml.etree.ElementTree as ET

from .cache import NamespacedCache, XML_DATA

logger = logging.getLogger(__name__)

COMPETENCIA_TAGS = ("dCompet", "Competencia", "dhEmi", "DataEmissao", "DataEmissaoRps", "dhEvento")
PRESTADOR_TAGS = ("emit", "prest", "PrestadorServico", "Prestador")


def fingerprint(raw_bytes: bytes) -> str:
    """Return the SHA-256 hex digest of ``raw_bytes``."""
    return hashlib.sha256(raw_bytes).hexdigest()


class Competencia(NamedTuple):
    year: int
    month: int

    @classmethod
    def from_date(cls, value: datetime.date) -> "Competencia":
        return cls(value.year, value.month)

    def __str__(self) -> str:
        return f"{self.year}-{self.month:02d}"


@dataclass(frozen=True)
class Artifact:
    """One downloaded XML document, immutable once built.

    ``sequence_number`` is the position of the document in the source feed
    (the ADN NSU), used to resume after documents that were not placed.
    """

    raw_bytes: bytes = field(repr=False)
    taxpayer_id: str
    competencia: Competencia
    source_identifier: str
    content_hash: str = ""
    sequence_number: Optional[int] = None

    def __post_init__(self):
        if not self.content_hash:
            object.__setattr__(self, "content_hash", fingerprint(self.raw_bytes))


@dataclass(frozen=True)
class XmlMetadata:
    competencia: Optional[Competencia]
    numero: Optional[str] = None
    codigo_verificacao: Optional[str] = None
    chave: Optional[str] = None
    prestador: Optional[str] = None


def _parse_date(txt: str) -> Optional[datetime.date]:
    txt = txt.strip()
    try:
        return datetime.datetime.fromisoformat(txt.replace("Z", "")).date()
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.datetime.strptime(txt[:10], fmt).date()
        except ValueError:
            continue
    if len(txt) == 6 and txt.isdigit():
        try:
            return datetime.date(int(txt[:4]), int(txt[4:]), 1)
        except ValueError:
            return None
    return None


def _find_text(root: ET.Element, tag: str) -> Optional[str]:
    el = root.find(f".//{{*}}{tag}")
    if el is not None and el.text and el.text.strip():
        return el.text.strip()
    return None


def _find_prestador(root: ET.Element) -> Optional[str]:
    for parent in PRESTADOR_TAGS:
        el = root.find(f".//{{*}}{parent}")
        if el is None:
            continue
        cnpj = _find_text(el, "CNPJ") or _find_text(el, "Cnpj")
        if cnpj:
            return cnpj
    return None


def cnpj_valido(cnpj: Optional[str]) -> bool:
    """Format check only: 14 digits, not all equal."""
    digits = "".join(c for c in (cnpj or "") if c.isdigit())
    return len(digits) == 14 and len(set(digits)) > 1


def extrair_metadados(xml_bytes: bytes) -> XmlMetadata:
    """Read competência, invoice number, verification code and issuer CNPJ from ``xml_bytes``.

    The competência comes from the first of ``dCompet``, ``Competencia``,
    ``dhEmi``, ``DataEmissao``, ``DataEmissaoRps`` or ``dhEvento`` that holds
    a parseable date. Unparseable documents yield ``competencia=None``.
    """
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as e:
        logger.warning("XML inválido, metadados não extraídos: %s", e)
        return XmlMetadata(competencia=None)
    competencia = None
    for tag in COMPETENCIA_TAGS:
        txt = _find_text(root, tag)
        if txt is None:
            continue
        dt = _parse_date(txt)
        if dt is not None:
            competencia = Competencia.from_date(dt)
            break
    chave = None
    inf = root.find(".//{*}infNFSe")
    if inf is not None:
        chave = (inf.get("Id") or "").replace("NFS", "") or None
    return XmlMetadata(
        competencia=competencia,
        numero=_find_text(root, "nNFSe") or _find_text(root, "Numero"),
        codigo_verificacao=_find_text(root, "CodigoVerificacao"),
        chave=chave,
        prestador=_find_prestador(root),
    )


class XmlMetadataReader:
    """Caches :func:`extrair_metadados` results by content fingerprint."""

    def __init__(self, cache: NamespacedCache):
        self.cache = cache

    def read(self, xml_bytes: bytes, content_hash: Optional[str] = None) -> XmlMetadata:
        key = content_hash or fingerprint(xml_bytes)
        meta = self.cache.get(XML_DATA, key)
        if meta is None:
            meta = extrair_metadados(xml_bytes)
            self.cache.put(XML_DATA, key, meta)
        return meta

    def build_artifact(
        self,
        xml_bytes: bytes,
        taxpayer_id: str,
        source_identifier: str,
        fallback: Optional[Competencia] = None,
        sequence_number: Optional[int] = None,
    ) -> Artifact:
        """Build an :class:`Artifact`, using ``fallback`` when the XML has no date."""
        content_hash = fingerprint(xml_bytes)
        meta = self.read(xml_bytes, content_hash)
        competencia = meta.competencia or fallback
        if competencia is None:
            today = datetime.date.today()
            competencia = Competencia(today.year, today.month)
            logger.warning(
                "Competência não encontrada em %s, usando mês atual %s",
                source_identifier,
                competencia,
            )
        return Artifact(
            raw_bytes=xml_bytes,
            taxpayer_id=taxpayer_id,
            competencia=competencia,
            source_identifier=source_identifier,
            content_hash=content_hash,
            sequence_number=sequence_number,
        )
