"""Move a flat directory of NFS-e XMLs into the ``{year}/{MM}{year}/{cnpj}`` tree."""
from __future__ import annotations

import datetime
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from .artifact import Artifact, XmlMetadataReader, cnpj_valido, fingerprint
from .errors import PlacementError, mask_cnpj
from .placer import ArtifactPlacer, Outcome

logger = logging.getLogger(__name__)


@dataclass
class OrganizationStats:
    total: int = 0
    organized: int = 0
    duplicates: int = 0
    conflicts: int = 0
    errors: int = 0


@dataclass
class OrganizationReport:
    timestamp: str
    stats: OrganizationStats = field(default_factory=OrganizationStats)
    processed: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.stats.total:
            return 0.0
        handled = self.stats.organized + self.stats.duplicates
        return round(handled * 100 / self.stats.total, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = self.success_rate
        return data


class XmlOrganizer:
    """Files every ``*.xml`` of a source directory through an :class:`ArtifactPlacer`.

    The taxpayer directory comes from the issuer CNPJ inside the XML, or
    ``default_cnpj`` when the document has none. Written and duplicate files
    are removed from the source; conflicting and failed ones stay there for
    manual review.
    """

    def __init__(
        self,
        placer: ArtifactPlacer,
        reader: XmlMetadataReader,
        default_cnpj: Optional[str] = None,
        remove_source: bool = True,
    ):
        self.placer = placer
        self.reader = reader
        self.default_cnpj = default_cnpj
        self.remove_source = remove_source

    def _artifact(self, xml_bytes: bytes, name: str) -> Artifact:
        content_hash = fingerprint(xml_bytes)
        meta = self.reader.read(xml_bytes, content_hash)
        if meta.competencia is None:
            raise ValueError("Competência não encontrada no XML")
        cnpj = meta.prestador or self.default_cnpj
        if not cnpj_valido(cnpj):
            raise ValueError(f"CNPJ do prestador inválido: {cnpj}")
        return Artifact(
            raw_bytes=xml_bytes,
            taxpayer_id="".join(c for c in cnpj if c.isdigit()),
            competencia=meta.competencia,
            source_identifier=name,
            content_hash=content_hash,
        )

    def organize_file(self, source: Path, report: OrganizationReport) -> None:
        report.stats.total += 1
        try:
            artifact = self._artifact(source.read_bytes(), source.name)
            result = self.placer.place(artifact)
        except (OSError, ValueError, PlacementError) as e:
            report.stats.errors += 1
            report.errors.append({"file": source.name, "error": str(e)})
            logger.error("Erro ao organizar %s: %s", source.name, e)
            if isinstance(e, PlacementError) and e.systemic:
                raise
            return
        meta = self.reader.read(artifact.raw_bytes, artifact.content_hash)
        entry = {
            "file": source.name,
            "path": result.path,
            "outcome": result.outcome.value,
            "reason": result.reason,
            "cnpj": mask_cnpj(artifact.taxpayer_id),
            "competencia": str(artifact.competencia),
            "numero": meta.numero,
            "chave": meta.chave,
        }
        if result.outcome is Outcome.CONFLICTED:
            report.stats.conflicts += 1
            entry["suggested_name"] = result.suggested_name
        else:
            if result.outcome is Outcome.WRITTEN:
                report.stats.organized += 1
            else:
                report.stats.duplicates += 1
            if self.remove_source:
                try:
                    os.remove(source)
                except OSError as e:
                    logger.warning("Não foi possível remover %s: %s", source, e)
        report.processed.append(entry)

    def organize_all(self, source_dir: str) -> OrganizationReport:
        """Organize every XML file directly under ``source_dir``."""
        source = Path(source_dir)
        if not source.is_dir():
            raise FileNotFoundError(f"Diretório de origem não encontrado: {source_dir}")
        report = OrganizationReport(timestamp=datetime.datetime.now().isoformat(timespec="seconds"))
        files = sorted(
            p for p in source.iterdir()
            if p.is_file() and p.suffix.lower() == ".xml" and not p.name.startswith(".")
        )
        if not files:
            logger.warning("Nenhum arquivo XML encontrado para organizar em %s", source_dir)
            return report
        logger.info("Encontrados %s arquivos XML para organizar", len(files))
        for path in files:
            self.organize_file(path, report)
        logger.info(
            "Organização concluída: %s/%s organizados, %s duplicados, %s conflitos, %s erros",
            report.stats.organized,
            report.stats.total,
            report.stats.duplicates,
            report.stats.conflicts,
            report.stats.errors,
        )
        return report

    @staticmethod
    def save_report(report: OrganizationReport, directory: str) -> str:
        os.makedirs(directory, exist_ok=True)
        name = os.path.join(
            directory, f"organization-report-{datetime.datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        )
        with open(name, "w", encoding="utf-8") as f:
            json.dump(report.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("Relatório de organização salvo: %s", name)
        return name
