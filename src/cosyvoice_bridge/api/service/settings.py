"""Configuration loader for the CosyVoice bridge.

Values come from the process environment. An optional YAML file selected by
``COSYVOICE_BRIDGE_CONFIG_FILE`` provides base values for the ``service``,
``upstream`` and ``defaults`` blocks; environment variables always win.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import yaml


CONFIG_ENV_VAR = "COSYVOICE_BRIDGE_CONFIG_FILE"
API_KEY_ENV_VAR = "ALIBABA_MODEL_STUDIO_API_KEY"
DASHSCOPE_URL = "wss://dashscope.aliyuncs.com/api-ws/v1/inference/"
SUPPORTED_FORMATS = ("mp3", "wav", "pcm")

logger = logging.getLogger(__name__)


class SettingsError(RuntimeError):
    """Raised when the bridge configuration is invalid."""


@dataclass
class ServiceSettings:
    """HTTP listener options."""

    host: str = "0.0.0.0"
    port: int = 8787
    shared_token: Optional[str] = None
    request_timeout_seconds: float = 30.0


@dataclass
class UpstreamSettings:
    """Remote synthesis service and session pool options."""

    api_key: str
    url: str = DASHSCOPE_URL
    model: str = "cosyvoice-v2"
    pool_capacity: int = 4
    acquire_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.01
    data_inspection: bool = False
    discard_abandoned_sessions: bool = False


@dataclass
class SynthesisDefaults:
    """Synthesis parameters used when a request leaves them out."""

    voice: str = "longxiaochun_v2"
    format: str = "mp3"
    sample_rate: int = 16000
    rate: float = 1.0
    pitch: float = 1.0
    volume: int = 50


@dataclass
class Settings:
    service: ServiceSettings
    upstream: UpstreamSettings
    defaults: SynthesisDefaults


# (env var, block, field, parser)
_ENV_FIELDS = (
    ("HOST", "service", "host", str),
    ("PORT", "service", "port", int),
    ("TTS_SIDECAR_TOKEN", "service", "shared_token", str),
    (API_KEY_ENV_VAR, "upstream", "api_key", str),
    ("COSYVOICE_URL", "upstream", "url", str),
    ("COSYVOICE_MODEL", "upstream", "model", str),
    ("COSYVOICE_POOL_SIZE", "upstream", "pool_capacity", int),
    ("COSYVOICE_ACQUIRE_TIMEOUT_S", "upstream", "acquire_timeout_seconds", float),
    ("COSYVOICE_DATA_INSPECTION", "upstream", "data_inspection", str),
    ("COSYVOICE_DISCARD_ABANDONED", "upstream", "discard_abandoned_sessions", str),
    ("COSYVOICE_VOICE", "defaults", "voice", str),
    ("COSYVOICE_FORMAT", "defaults", "format", str),
    ("COSYVOICE_SR", "defaults", "sample_rate", int),
    ("COSYVOICE_RATE", "defaults", "rate", float),
    ("COSYVOICE_PITCH", "defaults", "pitch", float),
    ("COSYVOICE_VOL", "defaults", "volume", int),
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _read_yaml(path: Path) -> Dict[str, Any]:
    logger.info("Loading bridge settings from %s", path)
    if not path.exists():
        logger.error("Configuration file not found: %s", path)
        raise SettingsError(f"Configuration file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - formatting errors only happen at runtime
        logger.exception("Failed to parse configuration file: %s", path)
        raise SettingsError(f"Failed to parse configuration file: {path}") from exc
    if not isinstance(raw, dict):
        raise SettingsError(f"Configuration file must contain a mapping: {path}")
    return raw


def _convert(block: str, key: str, value: Any, parser: Callable[[Any], Any]) -> Any:
    try:
        return parser(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Invalid value for {block}.{key}: {value!r}") from exc


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``)."""

    env = os.environ if environ is None else environ

    blocks: Dict[str, Dict[str, Any]] = {"service": {}, "upstream": {}, "defaults": {}}
    if env.get(CONFIG_ENV_VAR):
        path = Path(env[CONFIG_ENV_VAR]).expanduser().resolve(strict=False)
        raw = _read_yaml(path)
        for name in blocks:
            section = raw.get(name) or {}
            if not isinstance(section, dict):
                raise SettingsError(f"Configuration block '{name}' must be a mapping")
            blocks[name].update(section)

    for env_name, block, key, parser in _ENV_FIELDS:
        value = env.get(env_name)
        if value is None or value == "":
            continue
        blocks[block][key] = _convert(block, key, value, parser)

    if "TTS_TIMEOUT_MS" in env and env["TTS_TIMEOUT_MS"] != "":
        timeout_ms = _convert("service", "request_timeout_ms", env["TTS_TIMEOUT_MS"], float)
        blocks["service"]["request_timeout_seconds"] = timeout_ms / 1000.0

    upstream_raw = blocks["upstream"]
    if not upstream_raw.get("api_key"):
        logger.error("Environment variable %s is not set", API_KEY_ENV_VAR)
        raise SettingsError(f"Missing {API_KEY_ENV_VAR}")

    try:
        service = ServiceSettings(**blocks["service"])
        upstream = UpstreamSettings(**upstream_raw)
        defaults = SynthesisDefaults(**blocks["defaults"])
    except TypeError as exc:
        raise SettingsError(f"Unknown configuration key: {exc}") from exc

    service.port = _convert("service", "port", service.port, int)
    if service.shared_token is not None:
        service.shared_token = str(service.shared_token)
    service.request_timeout_seconds = _convert(
        "service", "request_timeout_seconds", service.request_timeout_seconds, float
    )
    upstream.pool_capacity = _convert("upstream", "pool_capacity", upstream.pool_capacity, int)
    upstream.acquire_timeout_seconds = _convert(
        "upstream", "acquire_timeout_seconds", upstream.acquire_timeout_seconds, float
    )
    upstream.poll_interval_seconds = _convert(
        "upstream", "poll_interval_seconds", upstream.poll_interval_seconds, float
    )
    upstream.data_inspection = _parse_bool(upstream.data_inspection)
    upstream.discard_abandoned_sessions = _parse_bool(upstream.discard_abandoned_sessions)
    defaults.sample_rate = _convert("defaults", "sample_rate", defaults.sample_rate, int)
    defaults.rate = _convert("defaults", "rate", defaults.rate, float)
    defaults.pitch = _convert("defaults", "pitch", defaults.pitch, float)
    defaults.volume = _convert("defaults", "volume", defaults.volume, int)

    if not (1 <= service.port <= 65535):
        logger.error("Invalid service port: %s", service.port)
        raise SettingsError("Invalid service port!")
    if service.request_timeout_seconds <= 0:
        raise SettingsError("request timeout must be positive")
    if upstream.pool_capacity < 1:
        raise SettingsError("pool_capacity must be >= 1")
    if upstream.acquire_timeout_seconds <= 0 or upstream.poll_interval_seconds <= 0:
        raise SettingsError("acquire_timeout_seconds and poll_interval_seconds must be positive")
    if defaults.format not in SUPPORTED_FORMATS:
        raise SettingsError(
            f"Unsupported default format '{defaults.format}'. Supported values: {list(SUPPORTED_FORMATS)}"
        )

    logger.info(
        "Loaded bridge settings: port=%s model=%s pool_capacity=%s timeout=%ss auth=%s",
        service.port,
        upstream.model,
        upstream.pool_capacity,
        service.request_timeout_seconds,
        "on" if service.shared_token else "off",
    )
    return Settings(service=service, upstream=upstream, defaults=defaults)
