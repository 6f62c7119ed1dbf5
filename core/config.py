from __future__ import annotations

import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, Literal, cast

import structlog
from pydantic import BaseModel, Field

UPLOAD_INTERVAL_ENV = "PROFILER_ON_DEMAND_UPLOAD_INTERVAL"
TRIGGER_TOKEN_ENV = "PROFILER_TRIGGER_TOKEN"


class AppCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    name: str
    env: str = "dev"


class LoggingCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    level: str = "INFO"
    json_output: bool = True
    log_dir: Path = Path("var/log/profiler")


class AgentCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    enabled: bool = True
    on_demand: bool = True
    application_name: str = "app.cpu"
    # 0 disables periodic export: a single snapshot is exported at session end
    upload_interval_sec: float = Field(default=0.0, ge=0)
    continuous_upload_interval_sec: float = Field(default=10.0, gt=0)
    http_default_duration_sec: float = Field(default=30.0, ge=0)
    signal_default_duration_sec: float = Field(default=90.0, ge=0)


class ProfilerCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    sample_interval_ms: float = Field(default=10.0, gt=0)
    max_depth: int = Field(default=128, gt=0)


class ExportCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    kind: Literal["journal", "http"] = "journal"
    journal_path: Path = Path("var/profiles/snapshots.ndjson")
    server_address: str = "http://localhost:4040"
    timeout_sec: float = Field(default=10.0, gt=0)
    queue_size: int = Field(default=16, gt=0)
    max_attempts: int = Field(default=3, gt=0)


class HttpTriggerCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    enabled: bool = True
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8081, ge=0, le=65535)
    auth_token: str | None = None


class SignalTriggerCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    enabled: bool = True


class BusTriggerCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    topic: str = "profiling.control"
    results_topic: str = "profiling.control.results"


class TriggersCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    http: HttpTriggerCfg = Field(default_factory=HttpTriggerCfg)
    signals: SignalTriggerCfg = Field(default_factory=SignalTriggerCfg)
    bus: BusTriggerCfg = Field(default_factory=BusTriggerCfg)


class Config(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    app: AppCfg
    logging: LoggingCfg = Field(default_factory=LoggingCfg)
    agent: AgentCfg = Field(default_factory=AgentCfg)
    profiler: ProfilerCfg = Field(default_factory=ProfilerCfg)
    export: ExportCfg = Field(default_factory=ExportCfg)
    triggers: TriggersCfg = Field(default_factory=TriggersCfg)


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    import yaml  # lazy import

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data or {}


def load_config(base_dir: str | Path) -> Config:
    """Load config models from ./config/base.yaml."""

    base_yaml = Path(base_dir) / "config" / "base.yaml"
    data = _read_yaml(base_yaml)
    if not data:
        msg = f"Missing or empty config file: {base_yaml}"
        raise FileNotFoundError(msg)

    return cast(Config, Config.model_validate(data))


def parse_upload_interval(raw: str | None, logger: Any | None = None) -> float | None:
    """Parse the upload interval override.

    Returns None when the variable is unset or blank (keep the configured
    value), 0.0 when it is invalid or non-positive (periodic export disabled),
    otherwise the interval in seconds.
    """
    if raw is None or not raw.strip():
        return None
    log = logger or structlog.get_logger("config")
    try:
        value = float(raw)
    except ValueError:
        log.warning("invalid_upload_interval", env=UPLOAD_INTERVAL_ENV, value=raw)
        return 0.0
    if not math.isfinite(value):
        log.warning("invalid_upload_interval", env=UPLOAD_INTERVAL_ENV, value=raw)
        return 0.0
    return max(value, 0.0)


def apply_env_overrides(
    config: Config,
    environ: Mapping[str, str],
    logger: Any | None = None,
) -> Config:
    """Return a copy of ``config`` with environment overrides applied."""

    updates: dict[str, Any] = {}
    interval = parse_upload_interval(environ.get(UPLOAD_INTERVAL_ENV), logger)
    if interval is not None:
        updates["agent"] = config.agent.model_copy(update={"upload_interval_sec": interval})

    token = environ.get(TRIGGER_TOKEN_ENV)
    if token:
        http_cfg = config.triggers.http.model_copy(update={"auth_token": token})
        updates["triggers"] = config.triggers.model_copy(update={"http": http_cfg})

    if not updates:
        return config
    return config.model_copy(update=updates)
