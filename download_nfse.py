import datetime
import logging
import os
import sys
from typing import Optional

from nfse_organizer import (
    ArtifactPlacer,
    Config,
    DuplicateResolver,
    JobRegistry,
    JobRunner,
    LocalStorage,
    NamespacedCache,
    PortalNacionalFetcher,
    XmlMetadataReader,
)

CONFIG_FILE = "config.json"


def _parse_date(value: str) -> Optional[datetime.date]:
    return datetime.date.fromisoformat(value) if value else None


def build_placer(cfg: Config, cache: NamespacedCache, reader: XmlMetadataReader) -> ArtifactPlacer:
    return ArtifactPlacer(LocalStorage(cfg.output_dir), DuplicateResolver(cache), reader)


def build_registry(cfg: Config, cache: NamespacedCache, reader: XmlMetadataReader) -> JobRegistry:
    """Wire storage, resolver, placer and runner around the shared ``cache``."""
    placer = build_placer(cfg, cache, reader)
    runner = JobRunner(placer, retry_delay_seconds=cfg.retry_delay_seconds)
    return JobRegistry(
        runner,
        cache,
        max_concurrent_jobs=cfg.max_concurrent_jobs,
        max_retries=cfg.max_retries,
    )


def setup_logging(cfg: Config) -> str:
    os.makedirs(cfg.log_dir, exist_ok=True)
    log_name = os.path.join(
        cfg.log_dir, f"log_nfse_{datetime.datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
    )
    logging.basicConfig(
        filename=log_name,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
    )
    print(f"Log registrado em: {log_name}")
    return log_name


def main(config_path: str = CONFIG_FILE) -> int:
    cfg = Config.load(config_path)
    os.makedirs(cfg.output_dir, exist_ok=True)
    setup_logging(cfg)

    start, end = _parse_date(cfg.start_date), _parse_date(cfg.end_date)
    cache = NamespacedCache(cfg.cache_policies(), sweep_interval=cfg.sweep_interval_seconds)
    reader = XmlMetadataReader(cache)
    with cache:
        registry = build_registry(cfg, cache, reader)
        ids = []
        for cnpj in cfg.cnpjs:
            fetcher = PortalNacionalFetcher(cfg, cnpj, reader, start, end)
            ids.append(registry.start(cnpj, fetcher, start, end))
        registry.wait()
        registry.shutdown()
        falhas = 0
        for execution_id in ids:
            snap = registry.status(execution_id)
            prog = snap["progress"]
            print(
                f"Execução {execution_id}: {snap['status']} - gravados {prog['written']}, "
                f"duplicados {prog['skipped_duplicate']}, conflitos {prog['conflicted']}"
            )
            if snap["error"]:
                print(f"  Erro: {snap['error']}")
            if snap["status"] != "completed":
                falhas += 1
    return 1 if falhas else 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else CONFIG_FILE))
