from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .geometry import parse_ratio
from .processor import PrintSettings
from .retry import RetryPolicy

# Load environment variables from .env file
load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

if os.environ.get("GALLERY_PRINT_CONFIG"):
    _CANDIDATE_CONFIG_PATHS.insert(0, Path(os.environ["GALLERY_PRINT_CONFIG"]))

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in broken installs
    raise FileNotFoundError("Default config.yaml could not be located; reinstall the package or set GALLERY_PRINT_CONFIG.")


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge overrides onto the packaged defaults.

    Struct mode is enabled on the defaults, so an override naming a key
    that does not exist raises instead of being silently ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_retry_policy(section: DictConfig) -> RetryPolicy:
    return RetryPolicy.from_config(OmegaConf.to_container(section, resolve=True))  # type: ignore[arg-type]


def build_print_settings(config: DictConfig) -> PrintSettings:
    layout = config.print
    return PrintSettings(
        site_url=str(config.site_url),
        photographer=str(config.photographer or ""),
        content_ratio=parse_ratio(layout.content_ratio),
        total_ratio=parse_ratio(layout.total_ratio),
        min_band_height=int(layout.min_band_height),
        sample_width=int(layout.sample_width),
        code_margin=int(layout.code_margin),
        min_code_size=int(layout.min_code_size),
        jpeg_quality=int(layout.jpeg_quality),
        font_path=str(layout.font_path) if layout.font_path else None,
        metadata_policy=build_retry_policy(config.metadata.retry),
    )
