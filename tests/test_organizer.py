import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import organize_xmls
from nfse_organizer.artifact import XmlMetadataReader
from nfse_organizer.organizer import XmlOrganizer
from nfse_organizer.placer import ArtifactPlacer, LocalStorage
from nfse_organizer.resolver import DuplicateResolver

CNPJ = "52399222000122"


def nfse_xml(numero, codigo, competencia="2025-07-31", cnpj=CNPJ, obs=""):
    prestador = f"<PrestadorServico><Cnpj>{cnpj}</Cnpj></PrestadorServico>" if cnpj else ""
    return (
        f"<CompNfse><Numero>{numero}</Numero><CodigoVerificacao>{codigo}</CodigoVerificacao>"
        f"<Competencia>{competencia}</Competencia>{prestador}{obs}</CompNfse>"
    ).encode()


@pytest.fixture
def organizer(tmp_path, cache):
    reader = XmlMetadataReader(cache)
    placer = ArtifactPlacer(LocalStorage(str(tmp_path / "out")), DuplicateResolver(cache), reader)
    return XmlOrganizer(placer, reader, default_cnpj="11222333000181")


def test_organize_flat_directory(tmp_path, organizer):
    src = tmp_path / "xmls"
    src.mkdir()
    (src / "a.xml").write_bytes(nfse_xml(1, "AAA"))
    (src / "b.xml").write_bytes(nfse_xml(1, "AAA", obs="<Obs>copia</Obs>"))
    (src / "c.xml").write_bytes(b"<CompNfse><Numero>3</Numero></CompNfse>")
    (src / "d.XML").write_bytes(nfse_xml(4, "DDD", competencia="2024-12-01", cnpj=None))
    (src / "leia-me.txt").write_text("ignorado")

    report = organizer.organize_all(str(src))

    assert report.stats.total == 4
    assert report.stats.organized == 2
    assert report.stats.duplicates == 1
    assert report.stats.errors == 1
    assert report.errors[0]["file"] == "c.xml"
    assert report.success_rate == 75.0
    out = tmp_path / "out"
    assert (out / "2025" / "072025" / CNPJ / "a.xml").read_bytes() == nfse_xml(1, "AAA")
    assert (out / "2024" / "122024" / "11222333000181" / "d.XML").exists()
    assert sorted(p.name for p in src.iterdir()) == ["c.xml", "leia-me.txt"]
    by_file = {entry["file"]: entry for entry in report.processed}
    assert by_file["b.xml"]["reason"] == "same_invoice"
    assert by_file["a.xml"]["numero"] == "1"
    assert by_file["a.xml"]["cnpj"] == "5239****0122"


def test_conflict_stays_in_source(tmp_path, organizer):
    src = tmp_path / "xmls"
    src.mkdir()
    (src / "nota.xml").write_bytes(nfse_xml(1, "AAA"))
    organizer.organize_all(str(src))
    (src / "nota.xml").write_bytes(nfse_xml(2, "BBB"))
    report = organizer.organize_all(str(src))
    assert report.stats.conflicts == 1
    assert report.processed[0]["suggested_name"].startswith("nota_")
    assert (src / "nota.xml").exists()


def test_missing_source_directory(tmp_path, organizer):
    with pytest.raises(FileNotFoundError):
        organizer.organize_all(str(tmp_path / "nao-existe"))


def test_empty_directory_report(tmp_path, organizer):
    report = organizer.organize_all(str(tmp_path))
    assert report.stats.total == 0
    assert report.success_rate == 0.0


def test_save_report(tmp_path, organizer):
    src = tmp_path / "xmls"
    src.mkdir()
    (src / "a.xml").write_bytes(nfse_xml(1, "AAA"))
    report = organizer.organize_all(str(src))
    saved = Path(organizer.save_report(report, str(tmp_path / "relatorios")))
    data = json.loads(saved.read_text(encoding="utf-8"))
    assert data["stats"]["organized"] == 1
    assert data["success_rate"] == 100.0


def test_main_organizes_into_output_dir(tmp_path, capsys):
    src = tmp_path / "xmls"
    src.mkdir()
    (src / "a.xml").write_bytes(nfse_xml(1, "AAA"))
    cfg_file = tmp_path / "config.json"
    cfg_file.write_text(
        json.dumps(
            {
                "cert_path": "cert.pfx",
                "cnpjs": [CNPJ],
                "output_dir": str(tmp_path / "out"),
                "log_dir": str(tmp_path / "logs"),
                "state_dir": str(tmp_path),
            }
        ),
        encoding="utf-8",
    )
    assert organize_xmls.main(str(src), str(cfg_file)) == 0
    assert (tmp_path / "out" / "2025" / "072025" / CNPJ / "a.xml").exists()
    assert "Organizados: 1" in capsys.readouterr().out
