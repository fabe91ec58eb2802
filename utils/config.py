# utils/config.py
import os
from pathlib import Path
import yaml
from dotenv import load_dotenv

from utils.logger import logger

def load_cfg(cfg_path: str | None = None):

    base_dir = Path(__file__).resolve().parents[1]

    cfg_file = Path(cfg_path) if cfg_path else (base_dir / "config.yaml")

    load_dotenv(base_dir / ".env")

    with open(cfg_file, "r", encoding="utf-8") as f:
        raw_cfg = yaml.safe_load(f) or {}

    def resolve_env(obj):
        if isinstance(obj, dict):
            return {k: resolve_env(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [resolve_env(v) for v in obj]
        if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            varname = obj[2:-1]
            return os.getenv(varname, "")
        return obj

    cfg = resolve_env(raw_cfg)

    if (cfg.get("webhooks") or {}).get("allow_unsigned"):
        logger.warning("⚠️ Unsigned webhooks are accepted!!! Local development only!")
    else:
        for section, key in (("provider", "webhook_secret"), ("indexer", "signing_key")):
            if not (cfg.get(section) or {}).get(key):
                logger.warning(f"{section}.{key} is empty; {section} webhooks will be rejected")

    return cfg
