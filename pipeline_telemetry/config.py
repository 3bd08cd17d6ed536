"""
Environment configuration and logging setup.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional
from urllib.parse import urlparse

from pydantic import BaseModel

DEFAULT_ORIGINS = "http://localhost:5173,http://localhost:5174"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(ValueError):
    """An environment variable holds a value the service cannot use."""


class Settings(BaseModel):
    ws_host: str = "0.0.0.0"
    ws_port: int = 3134
    http_port: int = 8080
    allowed_origins: List[str] = []
    telemetry_ws_url: str = "ws://localhost:3134"
    api_base_url: str = "http://localhost:8080"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls(
            ws_host=env.get("WS_HOST", "0.0.0.0"),
            ws_port=_port(env, "WS_PORT", "3134"),
            http_port=_port(env, "PORT", "8080"),
            allowed_origins=[o.strip() for o in env.get("FRONTEND_ORIGIN", DEFAULT_ORIGINS).split(",") if o.strip()],
            telemetry_ws_url=_url(env, "TELEMETRY_WS_URL", "ws://localhost:3134", ("ws", "wss")),
            api_base_url=_url(env, "API_BASE_URL", "http://localhost:8080", ("http", "https")).rstrip("/"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
        if not settings.allowed_origins:
            raise ConfigError("FRONTEND_ORIGIN must list at least one origin")
        if not isinstance(logging.getLevelName(settings.log_level), int):
            raise ConfigError(f"LOG_LEVEL: unknown level {settings.log_level!r}")
        return settings


def _port(env, name, default) -> int:
    raw = env.get(name, default)
    try:
        port = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"{name} out of range: {port}")
    return port


def _url(env, name, default, schemes) -> str:
    raw = env.get(name, default)
    parsed = urlparse(raw)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ConfigError(f"{name} must be a {'/'.join(schemes)} URL, got {raw!r}")
    return raw


@dataclass
class SimulationPolicy:
    """Timing and probability knobs for the simulated fleet."""

    tick_interval: float = 0.5
    churn_interval: float = 8.0
    liveness_interval: float = 2.0
    offline_timeout: float = 10.0
    target_active_fraction: float = 0.8
    start_probability: float = 0.6
    churn_probability: float = 0.5
    max_population: int = 28


def configure_logging(level="INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
