"""Configuration models using Pydantic for validation."""
from typing import Any, Dict, List, Literal, Optional, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator
import os

from pg_stats_exporter.errors import ConfigurationError

DEFAULT_POSTGRES_ADDRESS = "127.0.0.1:5432"
DEFAULT_LISTEN_ADDRESS = "127.0.0.1:9753"


def parse_address(address: str, default_port: int) -> Tuple[str, int]:
    """Split ``host[:port]`` (or ``[v6]:port``) into host and port."""
    address = (address or "").strip()
    if not address:
        raise ConfigurationError("empty address")

    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep or not host:
            raise ConfigurationError(f"cannot parse address '{address}'")
        port_part = rest[1:] if rest.startswith(":") else rest
        if rest and not rest.startswith(":"):
            raise ConfigurationError(f"cannot parse address '{address}'")
    elif address.count(":") > 1:
        # Bare IPv6 literal without a port
        host, port_part = address, ""
    else:
        host, _, port_part = address.partition(":")

    if not host:
        raise ConfigurationError(f"cannot parse address '{address}': missing host")

    if not port_part:
        return host, default_port

    try:
        port = int(port_part)
    except ValueError:
        raise ConfigurationError(f"cannot parse address '{address}': bad port '{port_part}'")
    if not 0 < port < 65536:
        raise ConfigurationError(f"cannot parse address '{address}': port out of range")
    return host, port


class ScrapeTarget(BaseModel):
    """Connection descriptor for the scraped PostgreSQL instance."""
    host: str = "127.0.0.1"
    port: int = 5432
    user: str = "postgres"
    password: Optional[str] = None
    dbname: str = "postgres"
    connect_timeout_s: int = 5
    sslmode: Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"] = "prefer"

    class Config:
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def split_address(cls, data: Any) -> Any:
        """Accept ``address: host:port`` as a shorthand for host and port."""
        if isinstance(data, dict) and "address" in data:
            data = dict(data)
            host, port = parse_address(data.pop("address"), 5432)
            data.setdefault("host", host)
            data.setdefault("port", port)
        return data

    @property
    def identifier(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}/{self.dbname}"

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``psycopg.connect``."""
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "dbname": self.dbname,
            "connect_timeout": self.connect_timeout_s,
            "sslmode": self.sslmode,
            "application_name": "pg_stats_exporter",
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


class ScrapeConfig(BaseModel):
    """Scrape scheduling configuration."""
    interval_s: float = 15.0
    query_timeout_s: float = 10.0
    backoff_base_s: Optional[float] = None  # Defaults to interval_s
    backoff_max_s: float = 300.0
    groups: Optional[List[str]] = None  # None = every registered group
    include_timestamps: bool = False

    @field_validator("interval_s", "query_timeout_s", "backoff_max_s")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def validate_backoff(self):
        if self.backoff_base_s is not None and self.backoff_base_s <= 0:
            raise ValueError("backoff_base_s must be positive")
        if self.effective_backoff_base_s > self.backoff_max_s:
            raise ValueError("backoff_base_s must not exceed backoff_max_s")
        return self

    @property
    def effective_backoff_base_s(self) -> float:
        return self.backoff_base_s if self.backoff_base_s is not None else self.interval_s


class TLSConfig(BaseModel):
    """Certificate material handed to the HTTP server."""
    cert_file: Optional[str] = None
    key_file: Optional[str] = None

    @model_validator(mode="after")
    def validate_pair(self):
        if bool(self.cert_file) != bool(self.key_file):
            raise ValueError("tls.cert_file and tls.key_file must be set together")
        return self

    @property
    def enabled(self) -> bool:
        return bool(self.cert_file and self.key_file)


class HttpConfig(BaseModel):
    """HTTP front configuration."""
    bind_address: str = "127.0.0.1"
    port: int = 9753
    graceful_shutdown_s: int = 10
    tls: TLSConfig = Field(default_factory=TLSConfig)


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"


class ExporterConfig(BaseModel):
    """Root configuration model."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    target: ScrapeTarget = Field(default_factory=ScrapeTarget)
    scrape: ScrapeConfig = Field(default_factory=ScrapeConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)

    class Config:
        populate_by_name = True

    @field_validator("scrape")
    @classmethod
    def validate_groups(cls, v):
        """Enabled groups must exist in the query catalogue."""
        if v.groups is not None:
            from pg_stats_exporter.queries import GROUPS_BY_ID

            unknown = [g for g in v.groups if g not in GROUPS_BY_ID]
            if unknown:
                raise ValueError(f"Unknown statistics groups: {unknown}")
            if not v.groups:
                raise ValueError("At least one statistics group must be enabled")
        return v


def _set_nested(raw: Dict[str, Any], section: str, key: str, value: Any):
    raw.setdefault(section, {})
    raw[section][key] = value


def apply_overrides(
    raw_config: Dict[str, Any],
    postgres: Optional[str] = None,
    user: Optional[str] = None,
    dbname: Optional[str] = None,
    listen: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply command line and environment overrides to a raw config dict."""
    raw_config = dict(raw_config)

    if postgres:
        target = dict(raw_config.get("target") or {})
        target.pop("host", None)
        target.pop("port", None)
        target["address"] = postgres
        raw_config["target"] = target
    if user:
        _set_nested(raw_config, "target", "user", user)
    if dbname:
        _set_nested(raw_config, "target", "dbname", dbname)
    if listen:
        host, port = parse_address(listen, 9753)
        _set_nested(raw_config, "http", "bind_address", host)
        _set_nested(raw_config, "http", "port", port)

    if env_password := os.getenv("PG_STATS_EXPORTER_PASSWORD"):
        _set_nested(raw_config, "target", "password", env_password)

    if env_log_level := os.getenv("LOG_LEVEL"):
        _set_nested(raw_config, "global", "log_level", env_log_level)

    return raw_config


def build_config(raw_config: Dict[str, Any]) -> ExporterConfig:
    """Validate a raw config dict."""
    try:
        return ExporterConfig(**raw_config)
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Configuration validation failed: {e}")


def load_config(config_path: Optional[str] = None, **overrides) -> ExporterConfig:
    """Load and validate configuration from an optional YAML file."""
    import yaml

    raw_config: Dict[str, Any] = {}
    if config_path:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration in {config_path} must be a mapping")

    return build_config(apply_overrides(raw_config, **overrides))
