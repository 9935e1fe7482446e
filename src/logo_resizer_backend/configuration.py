from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import FitMode, OutputFormat, ResizeDefaults

load_dotenv()

_HERE = Path(__file__).resolve()
DEFAULT_CONFIG_PATH = _HERE.parent / "config/config.yaml"
CONFIG_ENV_VAR = "LOGO_RESIZER_CONFIG"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOTES = {
    "outputs": "JSON array of {width, height, format}; width/height/format form fields are used when it is absent.",
    "dimensions": "Values above max_dimension are capped, not rejected.",
    "single": "single=true or forceSingle=true returns only the first requested output.",
    "jpeg": "Transparent areas are flattened onto white because JPEG carries no alpha.",
}


def _resolve_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return DEFAULT_CONFIG_PATH


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    config_path = _resolve_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found at {config_path}")
    return OmegaConf.load(config_path)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged


def allowed_origins(config: DictConfig) -> List[str]:
    raw = config.cors.allowed_origins
    if isinstance(raw, str):
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return [str(origin) for origin in raw]


def build_resize_defaults(config: DictConfig) -> ResizeDefaults:
    limits = config.limits
    return ResizeDefaults(
        formats=[fmt.value for fmt in OutputFormat],
        fit_modes=[mode.value for mode in FitMode],
        max_dimension=limits.max_dimension,
        default_jpeg_quality=config.render.default_jpeg_quality,
        default_webp_quality=config.render.default_webp_quality,
        max_upload_bytes=limits.max_upload_bytes,
        admission={
            "requests_per_window": limits.requests_per_window,
            "window_seconds": limits.window_seconds,
            "max_concurrent_per_client": limits.max_concurrent_per_client,
        },
        auth_required=bool(config.auth.required),
        notes=NOTES,
    )


def configure_logging(config: DictConfig) -> None:
    """Attach a single stream handler to the package logger."""
    logger = logging.getLogger(__package__)
    logger.setLevel(str(config.logging.level).upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
