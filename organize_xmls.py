import sys

from download_nfse import CONFIG_FILE, build_placer, setup_logging
from nfse_organizer import Config, NamespacedCache, XmlMetadataReader, XmlOrganizer


def main(source_dir: str, config_path: str = CONFIG_FILE) -> int:
    cfg = Config.load(config_path)
    setup_logging(cfg)
    cache = NamespacedCache(cfg.cache_policies(), sweep_interval=cfg.sweep_interval_seconds)
    reader = XmlMetadataReader(cache)
    default_cnpj = cfg.cnpjs[0] if len(cfg.cnpjs) == 1 else None
    with cache:
        organizer = XmlOrganizer(build_placer(cfg, cache, reader), reader, default_cnpj)
        report = organizer.organize_all(source_dir)
    stats = report.stats
    print(f"Total de arquivos: {stats.total}")
    print(f"Organizados: {stats.organized}")
    print(f"Duplicados: {stats.duplicates}")
    print(f"Conflitos: {stats.conflicts}")
    print(f"Erros: {stats.errors}")
    print(f"Taxa de sucesso: {report.success_rate}%")
    for erro in report.errors:
        print(f"  {erro['file']}: {erro['error']}")
    if stats.total:
        print(f"Relatório salvo em: {organizer.save_report(report, source_dir)}")
    return 1 if stats.errors else 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Uso: organize_xmls.py <diretorio_xml> [config.json]")
        sys.exit(2)
    sys.exit(main(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else CONFIG_FILE))
