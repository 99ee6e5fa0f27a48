from __future__ import annotations

import json
import os
from dataclasses import dataclass, asdict, field
from typing import Dict, List

from .cache import CachePolicy, NAMESPACES


DEFAULT_CACHE = {
    "files": {"ttl_seconds": 30, "max_entries": 100},
    "hashes": {"ttl_seconds": 300, "max_entries": 1000},
    "xml_data": {"ttl_seconds": 600, "max_entries": 500},
    "duplicates": {"ttl_seconds": 60, "max_entries": 200},
}


def _default_cache() -> Dict[str, Dict[str, float]]:
    return {name: dict(policy) for name, policy in DEFAULT_CACHE.items()}


@dataclass
class Config:
    cert_path: str = "caminho/para/certificado.pfx"
    cert_pass: str = "sua_senha"
    cnpjs: List[str] = field(default_factory=lambda: ["00000000000000"])
    start_date: str = ""
    end_date: str = ""
    output_dir: str = "./xml"
    log_dir: str = "logs"
    state_dir: str = "."
    file_prefix: str = "NFS-e"
    timeout: int = 30
    max_retries: int = 3
    retry_delay_seconds: float = 5
    max_concurrent_jobs: int = 4
    sweep_interval_seconds: float = 300
    cache: Dict[str, Dict[str, float]] = field(default_factory=_default_cache)

    REQUIRED_FIELDS = ["cert_path", "cert_pass", "cnpjs", "output_dir", "log_dir"]

    @classmethod
    def load(cls, path: str) -> "Config":
        """Load configuration from ``path`` or create it with defaults."""
        created = False
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        else:
            data = {}
            created = True
        cfg_data = asdict(cls())
        cache = cfg_data["cache"]
        for name, policy in (data.pop("cache", None) or {}).items():
            cache.setdefault(name, {}).update(policy)
        cfg_data.update(data)
        cfg = cls(**cfg_data)
        missing = [k for k in cls.REQUIRED_FIELDS if not getattr(cfg, k)]
        if missing and not created:
            raise ValueError(
                "Campos obrigatórios ausentes no config.json: " + ", ".join(missing)
            )
        cfg.cache_policies()
        if created:
            cfg.save(path)
        return cfg

    def save(self, path: str) -> None:
        """Persist configuration to ``path`` as JSON."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2, ensure_ascii=False)

    def cache_policies(self) -> Dict[str, CachePolicy]:
        """Build one :class:`CachePolicy` per namespace from ``cache``.

        Raises ``ValueError`` for unknown namespaces and non-positive values.
        """
        unknown = sorted(set(self.cache) - set(NAMESPACES))
        if unknown:
            raise ValueError("Namespaces de cache desconhecidos: " + ", ".join(unknown))
        policies = {}
        for name in NAMESPACES:
            raw = self.cache.get(name, DEFAULT_CACHE[name])
            ttl = float(raw.get("ttl_seconds", DEFAULT_CACHE[name]["ttl_seconds"]))
            max_entries = int(raw.get("max_entries", DEFAULT_CACHE[name]["max_entries"]))
            if ttl <= 0 or max_entries <= 0:
                raise ValueError(f"Política de cache inválida para '{name}': {raw}")
            policies[name] = CachePolicy(ttl_seconds=ttl, max_entries=max_entries)
        return policies
