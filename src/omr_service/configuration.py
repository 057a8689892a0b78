from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

BACKEND_CHOICES = ("placeholder", "command")

ENV_OVERRIDES: Dict[str, str] = {
    "temp_dir": "OMR_TEMP_DIR",
    "max_workers": "OMR_MAX_WORKERS",
    "backend": "OMR_BACKEND",
    "backend_command": "OMR_BACKEND_COMMAND",
    "backend_timeout_seconds": "OMR_BACKEND_TIMEOUT",
    "placeholder_delay_seconds": "OMR_PLACEHOLDER_DELAY",
    "job_ttl_seconds": "OMR_JOB_TTL",
    "log_level": "OMR_LOG_LEVEL",
    "host": "OMR_HOST",
    "port": "OMR_PORT",
}


@dataclass(frozen=True)
class Settings:
    temp_dir: Path
    max_workers: int
    backend: str
    backend_command: str
    backend_timeout_seconds: Optional[float]
    placeholder_delay_seconds: float
    job_ttl_seconds: Optional[float]
    artifact_extension: str
    artifact_media_type: str
    log_level: str
    host: str
    port: int


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_overrides() -> Dict[str, Any]:
    return {key: os.environ[var] for key, var in ENV_OVERRIDES.items() if os.environ.get(var)}


def make_runtime_config(overrides: Dict[str, Any]) -> DictConfig:
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    try:
        merged = OmegaConf.merge(base, OmegaConf.create(overrides))
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(f"Invalid configuration override: {exc}") from exc
    return DictConfig(merged)


def _optional_seconds(value: Any, key: str) -> Optional[float]:
    seconds = _as_float(value, key)
    if seconds < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return seconds or None


def _as_float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from exc


def _as_int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from exc


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Build the runtime settings.

    Precedence (lowest to highest): packaged config.yaml, OMR_* environment
    variables (a .env file is honoured), explicit ``overrides``.

    Raises:
        ConfigurationError: On unknown keys or out-of-range values
    """
    config = make_runtime_config({**_env_overrides(), **(overrides or {})})
    values = OmegaConf.to_container(config, resolve=True)

    max_workers = _as_int(values["max_workers"], "max_workers")
    if max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1")

    backend = str(values["backend"]).lower()
    if backend not in BACKEND_CHOICES:
        raise ConfigurationError(f"Unknown backend {backend!r}; expected one of {', '.join(BACKEND_CHOICES)}")

    temp_dir = values["temp_dir"]
    return Settings(
        temp_dir=Path(temp_dir) if temp_dir else Path(tempfile.gettempdir()) / "omr-service",
        max_workers=max_workers,
        backend=backend,
        backend_command=str(values["backend_command"]),
        backend_timeout_seconds=_optional_seconds(values["backend_timeout_seconds"], "backend_timeout_seconds"),
        placeholder_delay_seconds=max(_as_float(values["placeholder_delay_seconds"], "placeholder_delay_seconds"), 0.0),
        job_ttl_seconds=_optional_seconds(values["job_ttl_seconds"], "job_ttl_seconds"),
        artifact_extension=str(values["artifact_extension"]).lstrip("."),
        artifact_media_type=str(values["artifact_media_type"]),
        log_level=str(values["log_level"]).upper(),
        host=str(values["host"]),
        port=_as_int(values["port"], "port"),
    )
