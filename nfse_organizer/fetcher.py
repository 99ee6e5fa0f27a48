from __future__ import annotations

import base64
import datetime
import gzip
import logging
import os
import tempfile
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol

import requests

from .artifact import Artifact, Competencia, XmlMetadataReader
from .config import Config
from .errors import FatalFetchError, TransientFetchError, classify_exception, mask_cnpj

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from cryptography.hazmat.primitives.serialization.pkcs12 import (
    load_key_and_certificates,
)


@dataclass
class Page:
    number: int
    total_pages: Optional[int]
    artifacts: List[Artifact] = field(default_factory=list)
    has_more: bool = False
    cursor: Optional[int] = None


class Fetcher(Protocol):
    """Source of pages. Implementations may also provide ``commit(page, unplaced)``
    to persist progress once a page was handled, and ``close()``."""

    def fetch_page(self, page_number: int) -> Page:
        ...


class PortalNacionalFetcher:
    """Pages through the ADN distribution endpoint for one CNPJ.

    Every successful request is one page. The in-memory NSU only advances
    after a page was decoded, so asking for the same page again after a
    :class:`TransientFetchError` repeats the same request. The stored NSU
    only moves in :meth:`commit`, after the page's documents were placed;
    a document that was not placed holds it at its own NSU.
    """

    BASE_URL = "https://adn.nfse.gov.br/contribuintes/DFe"

    def __init__(
        self,
        config: Config,
        cnpj: str,
        reader: XmlMetadataReader,
        start_date: Optional[datetime.date] = None,
        end_date: Optional[datetime.date] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.config = config
        self.cnpj = cnpj
        self.reader = reader
        self.start = Competencia.from_date(start_date) if start_date else None
        self.end = Competencia.from_date(end_date) if end_date else None
        self.session_factory = session_factory
        self.logger = logging.getLogger(__name__)
        self.session: Optional[requests.Session] = None
        self._stack: Optional[ExitStack] = None
        self._nsu: Optional[int] = None
        self._held: Optional[int] = None

    def _nsu_file(self, cnpj: str) -> str:
        return os.path.join(self.config.state_dir, f"ultimo_nsu_{cnpj}.txt")

    def ler_ultimo_nsu(self, cnpj: Optional[str] = None) -> int:
        """Return the last stored NSU for ``cnpj`` (defaults to this fetcher's)."""
        fname = self._nsu_file(cnpj or self.cnpj)
        if os.path.exists(fname):
            with open(fname, "r", encoding="utf-8") as f:
                try:
                    return int(f.read().strip())
                except ValueError:
                    self.logger.warning("Arquivo de NSU inválido: %s", fname)
        return 1

    def salvar_ultimo_nsu(self, nsu: int, cnpj: Optional[str] = None) -> None:
        """Persist ``nsu`` for ``cnpj`` (defaults to this fetcher's)."""
        fname = self._nsu_file(cnpj or self.cnpj)
        os.makedirs(os.path.dirname(fname) or ".", exist_ok=True)
        with open(fname, "w", encoding="utf-8") as f:
            f.write(str(nsu))

    @contextmanager
    def pfx_to_pem(
        self,
        pfx_path: Optional[str] = None,
        pfx_password: Optional[str] = None,
    ) -> Iterable[str]:
        """Convert ``pfx_path`` to a temporary PEM file."""
        if pfx_path is None:
            pfx_path = self.config.cert_path
        if pfx_password is None:
            pfx_password = self.config.cert_pass
        data = Path(pfx_path).read_bytes()
        priv_key, cert, add_certs = load_key_and_certificates(
            data, pfx_password.encode(), None
        )
        tmp = tempfile.NamedTemporaryFile(suffix=".pem", delete=False)
        pem_path = tmp.name
        tmp.close()
        with open(pem_path, "wb") as f:
            f.write(priv_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()))
            f.write(cert.public_bytes(Encoding.PEM))
            if add_certs:
                for ca in add_certs:
                    f.write(ca.public_bytes(Encoding.PEM))
        try:
            yield pem_path
        finally:
            os.remove(pem_path)

    def open(self) -> None:
        if self.session is not None:
            return
        stack = ExitStack()
        try:
            pem_cert = stack.enter_context(self.pfx_to_pem())
        except (OSError, ValueError) as e:
            stack.close()
            raise FatalFetchError(f"Falha ao carregar certificado: {e}") from e
        sess = self.session_factory()
        sess.cert = pem_cert
        sess.verify = True
        stack.callback(sess.close)
        self._stack = stack
        self.session = sess
        self._nsu = self.ler_ultimo_nsu()
        self._held = None

    def close(self) -> None:
        """Close the internal requests session if it exists."""
        if self._stack is not None:
            try:
                self._stack.close()
            finally:
                self._stack = None
                self.session = None

    def __enter__(self) -> "PortalNacionalFetcher":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _in_range(self, competencia: Competencia) -> bool:
        if self.start is not None and competencia < self.start:
            return False
        if self.end is not None and competencia > self.end:
            return False
        return True

    def _decode(self, documentos: list) -> tuple:
        artifacts = []
        nsu_maior = self._nsu
        for nfse in sorted(documentos, key=lambda d: int(d.get("NSU", 0))):
            nsu_item = int(nfse["NSU"])
            chave = nfse["ChaveAcesso"]
            xml_bytes = gzip.decompress(base64.b64decode(nfse["ArquivoXml"]))
            nsu_maior = max(nsu_maior, nsu_item)
            artifact = self.reader.build_artifact(
                xml_bytes,
                self.cnpj,
                f"{self.config.file_prefix}_{chave}.xml",
                fallback=self.start,
                sequence_number=nsu_item,
            )
            if not self._in_range(artifact.competencia):
                self.logger.debug(
                    "NSU %s fora do período (%s), ignorado", nsu_item, artifact.competencia
                )
                continue
            artifacts.append(artifact)
        return artifacts, nsu_maior

    def fetch_page(self, page_number: int) -> Page:
        self.open()
        query_nsu = max(0, self._nsu - 1)
        url = f"{self.BASE_URL}/{query_nsu:020d}?cnpj={self.cnpj}"
        self.logger.info(
            "Consultando NSU %s (consulta %s) para CNPJ %s...",
            self._nsu,
            query_nsu,
            mask_cnpj(self.cnpj),
        )
        try:
            resp = self.session.get(url, timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            self.logger.error("Erro de conexão: %s", e)
            raise classify_exception(e, page_number) from e

        if resp.status_code == 204:
            self.logger.info("Nenhuma nota encontrada. Fim da consulta.")
            return Page(page_number, page_number, [], has_more=False)
        if resp.status_code in (401, 403):
            raise FatalFetchError(
                f"Falha de autenticação: {resp.status_code} {resp.text}", page_number
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientFetchError(f"Erro: {resp.status_code} {resp.text}", page_number)
        if resp.status_code != 200:
            raise FatalFetchError(f"Erro: {resp.status_code} {resp.text}", page_number)

        resposta = resp.json()
        documentos = resposta.get("LoteDFe", [])
        if resposta.get("StatusProcessamento") != "DOCUMENTOS_LOCALIZADOS" or not documentos:
            self.logger.info("Nenhum documento localizado.")
            return Page(page_number, page_number, [], has_more=False)
        try:
            artifacts, nsu_maior = self._decode(documentos)
        except (KeyError, ValueError, OSError) as e:
            raise FatalFetchError(f"Lote inválido: {e}", page_number) from e
        self._nsu = nsu_maior + 1
        return Page(page_number, None, artifacts, has_more=True, cursor=self._nsu)

    def commit(self, page: Page, unplaced: Iterable[int] = ()) -> None:
        """Persist the NSU to resume from once ``page`` was handled.

        ``unplaced`` holds the NSUs of documents of ``page`` that have no
        placement outcome (failed write, cancellation). The stored NSU never
        passes the lowest of them for the rest of this session.
        """
        pending = list(unplaced)
        if pending:
            lowest = min(pending)
            self._held = lowest if self._held is None else min(self._held, lowest)
            self.logger.warning(
                "NSU %s não processado para CNPJ %s, retomada a partir dele",
                lowest,
                mask_cnpj(self.cnpj),
            )
        if self._held is not None:
            self.salvar_ultimo_nsu(self._held)
        elif page.cursor is not None:
            self.salvar_ultimo_nsu(page.cursor)
