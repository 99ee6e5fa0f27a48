import base64
import errno
import datetime
import gzip
import sys
from contextlib import contextmanager
from pathlib import Path

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from nfse_organizer.artifact import XmlMetadataReader
from nfse_organizer.config import Config
from nfse_organizer.errors import FatalFetchError, TransientFetchError
from nfse_organizer.fetcher import PortalNacionalFetcher
from nfse_organizer.placer import ArtifactPlacer, LocalStorage
from nfse_organizer.resolver import DuplicateResolver
from nfse_organizer.tracker import DownloadJobTracker, JobRunner


def doc(nsu, chave, competencia):
    xml = f"<NFSe><infNFSe><dCompet>{competencia}</dCompet></infNFSe></NFSe>".encode()
    return {
        "NSU": str(nsu),
        "ChaveAcesso": chave,
        "ArquivoXml": base64.b64encode(gzip.compress(xml)).decode(),
    }


class DummyResp:
    def __init__(self, status, data=None):
        self.status_code = status
        self._data = data or {}
        self.text = ""

    def json(self):
        return self._data


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.urls = []
        self.closed = False

    def get(self, url, timeout=0):
        self.urls.append(url)
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    def close(self):
        self.closed = True


@pytest.fixture
def cfg(tmp_path):
    return Config(
        cert_path="dummy",
        cert_pass="x",
        output_dir=str(tmp_path / "xml"),
        state_dir=str(tmp_path),
        retry_delay_seconds=0,
    )


@pytest.fixture(autouse=True)
def dummy_pfx(monkeypatch, tmp_path):
    @contextmanager
    def fake(self, *a, **k):
        yield str(tmp_path / "cert.pem")

    monkeypatch.setattr(PortalNacionalFetcher, "pfx_to_pem", fake)


def make_fetcher(cfg, cache, session, **kwargs):
    return PortalNacionalFetcher(
        cfg,
        "52399222000122",
        XmlMetadataReader(cache),
        start_date=datetime.date(2025, 7, 1),
        end_date=datetime.date(2025, 8, 1),
        session_factory=lambda: session,
        **kwargs,
    )


def test_run_updates_nsu(tmp_path, cfg, cache):
    lote = {
        "StatusProcessamento": "DOCUMENTOS_LOCALIZADOS",
        "LoteDFe": [
            doc(2, "k2", "2025-07-10"),
            doc(1, "k1", "2025-07-01"),
            doc(3, "k3", "2025-05-01"),
        ],
    }
    session = DummySession([DummyResp(200, lote), DummyResp(204)])
    fetcher = make_fetcher(cfg, cache, session)
    placer = ArtifactPlacer(LocalStorage(cfg.output_dir), DuplicateResolver(cache))
    runner = JobRunner(placer, retry_delay_seconds=0)

    with fetcher:
        snap = runner.run(DownloadJobTracker("52399222000122"), fetcher)

    assert session.closed
    assert snap["status"] == "completed"
    assert snap["progress"]["written"] == 2
    assert session.urls[0] == (
        f"{PortalNacionalFetcher.BASE_URL}/{0:020d}?cnpj=52399222000122"
    )
    assert session.urls[1] == (
        f"{PortalNacionalFetcher.BASE_URL}/{3:020d}?cnpj=52399222000122"
    )
    nsu_file = tmp_path / "ultimo_nsu_52399222000122.txt"
    assert nsu_file.read_text() == "4"
    target = Path(cfg.output_dir) / "2025" / "072025" / "52399222000122"
    assert sorted(p.name for p in target.iterdir()) == ["NFS-e_k1.xml", "NFS-e_k2.xml"]


def test_sem_documentos_encerra(cfg, cache):
    session = DummySession([DummyResp(200, {"StatusProcessamento": "NENHUM_DOCUMENTO_LOCALIZADO"})])
    page = make_fetcher(cfg, cache, session).fetch_page(1)
    assert not page.has_more
    assert page.artifacts == []


@pytest.mark.parametrize("status", [401, 403])
def test_autenticacao_fatal(cfg, cache, status):
    session = DummySession([DummyResp(status)])
    with pytest.raises(FatalFetchError):
        make_fetcher(cfg, cache, session).fetch_page(1)


@pytest.mark.parametrize(
    "resp",
    [DummyResp(429), DummyResp(503), requests.exceptions.Timeout("read timed out")],
)
def test_falhas_transitorias(cfg, cache, resp):
    session = DummySession([resp])
    with pytest.raises(TransientFetchError):
        make_fetcher(cfg, cache, session).fetch_page(1)


def test_nsu_nao_avanca_apos_falha(tmp_path, cfg, cache):
    lote = {"StatusProcessamento": "DOCUMENTOS_LOCALIZADOS", "LoteDFe": [doc(7, "k7", "2025-07-02")]}
    session = DummySession([DummyResp(503), DummyResp(200, lote)])
    fetcher = make_fetcher(cfg, cache, session)
    fetcher.salvar_ultimo_nsu(7)
    with pytest.raises(TransientFetchError):
        fetcher.fetch_page(1)
    page = fetcher.fetch_page(1)
    assert session.urls[0] == session.urls[1]
    assert [a.source_identifier for a in page.artifacts] == ["NFS-e_k7.xml"]
    assert [a.sequence_number for a in page.artifacts] == [7]
    nsu_file = tmp_path / "ultimo_nsu_52399222000122.txt"
    assert nsu_file.read_text() == "7"
    fetcher.commit(page)
    assert nsu_file.read_text() == "8"


def test_certificado_invalido(cfg, cache, monkeypatch):
    @contextmanager
    def broken(self, *a, **k):
        raise FileNotFoundError("dummy")
        yield

    monkeypatch.setattr(PortalNacionalFetcher, "pfx_to_pem", broken)
    with pytest.raises(FatalFetchError):
        make_fetcher(cfg, cache, DummySession([])).fetch_page(1)


def lote_k123():
    return {
        "StatusProcessamento": "DOCUMENTOS_LOCALIZADOS",
        "LoteDFe": [
            doc(1, "k1", "2025-07-01"),
            doc(2, "k2", "2025-07-02"),
            doc(3, "k3", "2025-07-03"),
        ],
    }


def stored_names(cfg):
    target = Path(cfg.output_dir) / "2025" / "072025" / "52399222000122"
    return sorted(p.name for p in target.iterdir())


def test_cancelamento_preserva_nsu_pendente(tmp_path, cfg, cache):
    placer = ArtifactPlacer(LocalStorage(cfg.output_dir), DuplicateResolver(cache))
    runner = JobRunner(placer, retry_delay_seconds=0)
    nsu_file = tmp_path / "ultimo_nsu_52399222000122.txt"

    # before the page, before k1, then stop before k2
    flags = iter([True, True])
    session = DummySession([DummyResp(200, lote_k123())])
    with make_fetcher(cfg, cache, session) as fetcher:
        snap = runner.run(
            DownloadJobTracker("52399222000122"), fetcher, running=lambda: next(flags, False)
        )
    assert snap["status"] == "failed"
    assert snap["progress"]["written"] == 1
    assert nsu_file.read_text() == "2"

    session = DummySession([DummyResp(200, lote_k123()), DummyResp(204)])
    with make_fetcher(cfg, cache, session) as fetcher:
        snap = runner.run(DownloadJobTracker("52399222000122"), fetcher)
    assert session.urls[0] == f"{PortalNacionalFetcher.BASE_URL}/{1:020d}?cnpj=52399222000122"
    assert snap["status"] == "completed"
    assert snap["progress"]["written"] == 2
    assert snap["progress"]["skipped_duplicate"] == 1
    assert stored_names(cfg) == ["NFS-e_k1.xml", "NFS-e_k2.xml", "NFS-e_k3.xml"]
    assert nsu_file.read_text() == "4"


def test_falha_de_gravacao_preserva_nsu(tmp_path, cfg, cache, monkeypatch):
    placer = ArtifactPlacer(LocalStorage(cfg.output_dir), DuplicateResolver(cache))
    runner = JobRunner(placer, retry_delay_seconds=0)
    nsu_file = tmp_path / "ultimo_nsu_52399222000122.txt"
    original = placer.storage.write_file
    broken = {"NFS-e_k2.xml"}

    def flaky(path, data):
        if path.rsplit("/", 1)[-1] in broken:
            raise OSError(errno.EACCES, "Permission denied")
        original(path, data)

    monkeypatch.setattr(placer.storage, "write_file", flaky)
    session = DummySession([DummyResp(200, lote_k123()), DummyResp(204)])
    with make_fetcher(cfg, cache, session) as fetcher:
        snap = runner.run(DownloadJobTracker("52399222000122"), fetcher)
    assert snap["status"] == "completed"
    assert snap["progress"]["written"] == 2
    assert snap["progress"]["failed"] == 1
    assert session.urls[1] == f"{PortalNacionalFetcher.BASE_URL}/{3:020d}?cnpj=52399222000122"
    assert nsu_file.read_text() == "2"

    broken.clear()
    session = DummySession([DummyResp(200, lote_k123()), DummyResp(204)])
    with make_fetcher(cfg, cache, session) as fetcher:
        snap = runner.run(DownloadJobTracker("52399222000122"), fetcher)
    assert snap["progress"]["written"] == 1
    assert snap["progress"]["skipped_duplicate"] == 2
    assert stored_names(cfg) == ["NFS-e_k1.xml", "NFS-e_k2.xml", "NFS-e_k3.xml"]
    assert nsu_file.read_text() == "4"
