import copy
import os
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Type, TypeVar

import yaml
from dotenv import load_dotenv
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .logging_setup import logger

# Load .env early
load_dotenv()

ENV_PREFIX = "MAILPROBE"
FALLBACK_CONFIG_PATHS = ("./config.yaml", "/etc/mailprobe/config.yaml")

DEFAULTS: Dict[str, Any] = {
    "imap": {
        "timeout_seconds": 10,
        "servers": [],
    },
    "webmail": {
        "timeout_seconds": 30,
        "servers": [],
    },
    "metrics": {
        "listen_addr": "0.0.0.0",
        "prometheus_port": 9090,
        "test_interval": 30,
        # Prefix for Prometheus metric names, "" for none
        "prefix": "mailprobe_",
    },
    "scheduler": {
        # Round deadline = test_interval * round_timeout_factor
        "round_timeout_factor": 2,
        "cancel_grace_seconds": 1,
    },
}

API_KEY = os.environ.get("API_KEY")
METRICS_USER = os.environ.get("METRICS_USER")
METRICS_PASS = os.environ.get("METRICS_PASS")

APP_VERSION = os.environ.get("APP_VERSION", "0.1.0")
GIT_SHA = os.environ.get("GIT_SHA", "")
BUILD_DATE = os.environ.get("BUILD_DATE", "")


class ConfigError(Exception):
    """Configuration could not be read or is invalid at the top level."""


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("cannot be empty")
    return value


def _require_port(value: int) -> int:
    if value <= 0 or value > 65535:
        raise ValueError(f"invalid port number: {value}")
    return value


NonEmptyStr = Annotated[str, AfterValidator(_require_text)]
Port = Annotated[int, AfterValidator(_require_port)]


class ImapServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: NonEmptyStr
    host: NonEmptyStr
    port: Port = 993
    username: NonEmptyStr
    password: NonEmptyStr
    # auto: implicit TLS first, plaintext if the TLS connect fails
    tls: Literal["auto", "always", "never"] = "auto"
    verify_tls: bool = False
    mailbox: NonEmptyStr = "INBOX"
    timeout_seconds: float = Field(10.0, gt=0)

    @property
    def kind(self) -> str:
        return "imap"


class WebmailServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: NonEmptyStr
    type: NonEmptyStr
    base_url: str
    username: NonEmptyStr
    password: NonEmptyStr
    user_agent: Optional[str] = None
    timeout_seconds: float = Field(30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value.rstrip("/")

    @property
    def kind(self) -> str:
        return self.type


class MetricsSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    listen_addr: str = "0.0.0.0"
    prometheus_port: Port = 9090
    test_interval: int = Field(30, ge=1)
    prefix: str = "mailprobe_"


class SchedulerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_timeout_factor: float = Field(2.0, gt=0)
    cancel_grace_seconds: float = Field(1.0, ge=0)


class ProbeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    imap_servers: Tuple[ImapServerConfig, ...] = ()
    webmail_servers: Tuple[WebmailServerConfig, ...] = ()
    metrics: MetricsSettings = MetricsSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    source_path: Optional[str] = None

    @property
    def round_timeout(self) -> float:
        return self.metrics.test_interval * self.scheduler.round_timeout_factor


# ---------- Loading ----------

def resolve_config_path(explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return env_path
    for candidate in FALLBACK_CONFIG_PATHS:
        if os.path.isfile(candidate):
            return candidate
    return FALLBACK_CONFIG_PATHS[-1]


def _expand_env_value(val: Any) -> Any:
    if isinstance(val, str):
        # expand ${VAR} and $VAR
        return os.path.expandvars(val)
    if isinstance(val, dict):
        return {k: _expand_env_value(v) for k, v in val.items()}
    if isinstance(val, list):
        return [_expand_env_value(v) for v in val]
    return val


def apply_env_overrides(data: Dict[str, Any], prefix: str = ENV_PREFIX, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Override scalar keys from ``<PREFIX>_<SECTION>_<KEY>`` environment variables.

    Only keys already present in ``data`` are considered; lists (server
    entries) are never overridden this way.
    """
    environ = os.environ if environ is None else environ
    for key, value in data.items():
        env_key = f"{prefix}_{key}".upper()
        if isinstance(value, dict):
            apply_env_overrides(value, env_key, environ)
        elif isinstance(value, list):
            continue
        elif env_key in environ:
            data[key] = environ[env_key]
    return data


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"error reading config {path}: {e}") from e
    if not isinstance(loaded, dict):
        raise ConfigError(f"config {path} must be a mapping at the top level")
    return loaded


def _merge_defaults(loaded: Dict[str, Any]) -> Dict[str, Any]:
    data = copy.deepcopy(DEFAULTS)
    # shallow merge per top-level section
    for k, v in loaded.items():
        if isinstance(v, dict) and isinstance(data.get(k), dict):
            data[k] = {**data[k], **v}
        else:
            data[k] = v
    return data


M = TypeVar("M", bound=BaseModel)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def _validate_servers(raw: Any, model: Type[M], label: str, defaults: Optional[Dict[str, Any]] = None) -> Tuple[M, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"{label} servers must be a list")
    servers: List[M] = []
    seen = set()
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            logger.warning(f"Skipping {label} server {index}: entry is not a mapping")
            continue
        try:
            server = model.model_validate({**(defaults or {}), **entry})
        except ValidationError as e:
            logger.warning(f"Skipping {label} server {index} ({entry.get('name') or 'unnamed'}): {_first_error(e)}")
            continue
        if server.name in seen:
            logger.warning(f"Skipping {label} server {index}: duplicate name '{server.name}'")
            continue
        seen.add(server.name)
        servers.append(server)
    return tuple(servers)


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"section '{key}' must be a mapping")
    return value


def _server_defaults(section: Dict[str, Any]) -> Dict[str, Any]:
    # section-wide settings every server entry inherits unless it sets its own
    return {k: v for k, v in section.items() if k != "servers"}


def build_config(loaded: Dict[str, Any], environ: Optional[Mapping[str, str]] = None, source_path: Optional[str] = None) -> ProbeConfig:
    data = apply_env_overrides(_merge_defaults(loaded), environ=environ)
    data = _expand_env_value(data)

    imap = _section(data, "imap")
    webmail = _section(data, "webmail")
    try:
        metrics = MetricsSettings.model_validate(_section(data, "metrics"))
        scheduler = SchedulerSettings.model_validate(_section(data, "scheduler"))
        cfg = ProbeConfig(
            imap_servers=_validate_servers(imap.get("servers"), ImapServerConfig, "IMAP", _server_defaults(imap)),
            webmail_servers=_validate_servers(webmail.get("servers"), WebmailServerConfig, "webmail", _server_defaults(webmail)),
            metrics=metrics,
            scheduler=scheduler,
            source_path=source_path,
        )
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {_first_error(e)}") from e
    return cfg


def load_config(path: Optional[str] = None) -> ProbeConfig:
    path = resolve_config_path(path)
    if os.path.exists(path):
        loaded = _read_yaml(path)
    else:
        logger.warning(f"Config file {path} not found; using defaults (no servers configured)")
        loaded = {}
    cfg = build_config(loaded, source_path=path)
    logger.info(
        f"Config loaded from {path}: imap_servers={len(cfg.imap_servers)} webmail_servers={len(cfg.webmail_servers)} "
        f"test_interval={cfg.metrics.test_interval}s round_timeout={cfg.round_timeout:g}s"
    )
    return cfg
