# query_stats_server/config.py
"""
Settings loader.

Reads settings.yaml once and validates it into explicit models. Every option the
service understands is listed here with its default; unknown keys are rejected.
"""

import os
import logging
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

SETTINGS_PATH = os.getenv(
    "QUERY_STATS_SETTINGS",
    os.path.join(os.path.dirname(__file__), "config/settings.yaml"),
)


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ServerSettings(_Strict):
    name: str = "query_stats_mcp"
    port: int = 8300


class LoggingSettings(_Strict):
    level: str = "INFO"
    json_lines: bool = Field(False, alias="json")


class DatabasePreset(_Strict):
    """One logical database registration."""

    id: str = ""
    display_name: Optional[str] = None
    dsn: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    # engine database whose statements are reported (defaults to the session's database)
    database_name: Optional[str] = None
    statement_timeout_ms: int = Field(30000, ge=0)
    connect_timeout_s: int = Field(5, ge=1)
    reset_domain: Optional[str] = None
    capture_query_stats: bool = True

    @property
    def reset_domain_id(self) -> str:
        return self.reset_domain or self.id

    @property
    def name(self) -> str:
        return self.display_name or self.id

    def connect_kwargs(self) -> Dict:
        options = f"-c statement_timeout={self.statement_timeout_ms}"
        if self.dsn:
            return {"dsn": self.dsn, "connect_timeout": self.connect_timeout_s, "options": options}
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout_s,
            "options": options,
        }


class StatsDatabaseSettings(_Strict):
    backend: str = Field("sqlite", pattern="^(sqlite|postgres)$")
    path: str = "query_stats_history.db"
    dsn: Optional[str] = None
    table: str = Field("query_stats_history", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    create_schema: bool = True

    @model_validator(mode="after")
    def _postgres_needs_dsn(self):
        if self.backend == "postgres" and not self.dsn:
            raise ValueError("stats_database.dsn is required for the postgres backend")
        return self


class CaptureSettings(_Strict):
    enabled: bool = False
    interval_minutes: int = Field(5, ge=1)
    row_limit: int = Field(1000000, ge=1)
    retention_days: int = Field(14, ge=1)
    cleanup_interval_hours: int = Field(24, ge=1)


class Settings(_Strict):
    server: ServerSettings = ServerSettings()
    logging: LoggingSettings = LoggingSettings()
    databases: Dict[str, DatabasePreset]
    stats_database: StatsDatabaseSettings = StatsDatabaseSettings()
    capture: CaptureSettings = CaptureSettings()
    slow_query_ms: float = Field(20, ge=0)
    slow_query_calls: int = Field(100, ge=0)

    @model_validator(mode="after")
    def _check_databases(self):
        if not self.databases:
            raise ValueError("at least one database must be configured")

        for db_id, preset in self.databases.items():
            preset.id = db_id

        for db_id, preset in self.databases.items():
            owner_id = preset.reset_domain_id
            if owner_id == db_id:
                continue
            owner = self.databases.get(owner_id)
            if owner is None:
                raise ValueError(f"database '{db_id}' declares unknown reset_domain '{owner_id}'")
            if owner.reset_domain_id != owner_id:
                raise ValueError(
                    f"database '{db_id}' reset_domain '{owner_id}' is itself a member of "
                    f"'{owner.reset_domain_id}'; point it at the domain owner"
                )
        return self


class Config:
    def __init__(self, settings: Settings, path: Optional[str] = None):
        self.path = path
        self.settings = settings

        self.server_name = settings.server.name
        self.server_port = settings.server.port
        self.database_presets = settings.databases

    @property
    def stats_database(self) -> StatsDatabaseSettings:
        return self.settings.stats_database

    @property
    def capture(self) -> CaptureSettings:
        return self.settings.capture

    def get_db_preset(self, name: str) -> DatabasePreset:
        if name not in self.database_presets:
            raise KeyError(f"DB preset '{name}' is not defined in settings.yaml")
        return self.database_presets[name]

    def preset_ids(self) -> List[str]:
        return list(self.database_presets.keys())


def parse_config(raw: Dict, path: Optional[str] = None) -> Config:
    """Validate an already-loaded settings mapping."""
    try:
        settings = Settings.model_validate(raw or {})
    except ValidationError as e:
        raise ValueError(f"Invalid settings{' in ' + path if path else ''}: {e}") from e
    return Config(settings, path=path)


def load_config(path: Optional[str] = None) -> Config:
    path = path or SETTINGS_PATH
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    config = parse_config(raw, path=path)
    logger.info(f"Loaded settings from {path}: {len(config.database_presets)} database(s)")
    return config


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or load the global settings instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[Config]) -> None:
    global _config
    _config = config
