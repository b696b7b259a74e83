"""
Settings of the report store and its sync engine.

Values resolve in this order, first match wins:
1. Keyword arguments, and the TOML or JSON file read by ``load_settings``
2. ``REPORT_SYNC_*`` environment variables, nested with ``__``
   (``REPORT_SYNC_API__PAGE_LIMIT=250``)
3. Field defaults

Example usage:
    from report_sync.config import load_settings

    settings = load_settings("report-sync.toml")
    store_path = settings.database.path
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Secret fields of ApiConfig, masked whenever settings are written out
SECRET_API_FIELDS = ("api_key", "api_secret", "auth_token")

TOML_SUFFIXES = (".toml", ".tml")


class DatabaseConfig(BaseModel):
    """Local store configuration."""

    path: Path = Field(
        default=Path("db/report-sync.db"),
        description="Path to the local SQLite store",
    )
    backups_dir: Path = Field(
        default=Path("db/backups"),
        description="Directory for store backups",
    )


class ApiConfig(BaseModel):
    """Remote data source configuration."""

    base_url: str = Field(
        default="https://report.bitfinex.com/api",
        description="Base URL of the remote report service (JSON-RPC)",
    )
    api_key: SecretStr = Field(default=SecretStr(""))
    api_secret: SecretStr = Field(default=SecretStr(""))
    auth_token: SecretStr = Field(default=SecretStr(""))
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Request timeout",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts per request before a fetch fails",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base delay between retries (grows linearly)",
    )
    page_limit: int = Field(
        default=500,
        ge=1,
        le=10_000,
        description="Maximum records requested per page",
    )


class SyncOptions(BaseModel):
    """Options controlling incremental sync behavior."""

    allowed_freshness_gap_minutes: int = Field(
        default=60,
        ge=0,
        description="Minutes a window may lag behind now before a fresh step is added",
    )
    allowed_start_drift_minutes: int = Field(
        default=5,
        ge=0,
        description="Minutes a configured start may move below a synced base start",
    )
    forex_symbols: list[str] = Field(
        default_factory=lambda: ["USD", "EUR", "JPY", "GBP"],
        description="Forex currencies converted through tBTC<forex> candles",
    )
    convert_to: str = Field(
        default="USD",
        description="Currency candles convert ledger currencies to",
    )
    candles_timeframe: str = Field(
        default="1D",
        description="Timeframe of candles used for currency conversion",
    )
    recalc_batch_size: int = Field(
        default=20_000,
        ge=1,
        description="Ledger rows per page in sub-account balance recalculation",
    )
    recalc_max_pages: int = Field(
        default=100,
        ge=1,
        description="Page ceiling of sub-account balance recalculation",
    )

    @field_validator("forex_symbols", mode="before")
    @classmethod
    def split_symbols(cls, v: Any) -> Any:
        """Accept a comma separated string from the environment."""
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


class LoggingConfig(BaseModel):
    """Where and how the ``report_sync`` logger writes."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Console output style",
    )
    file: Path | None = Field(
        default=None,
        description="JSON lines log file, rotated by size",
    )
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Rotated log files kept next to the active one",
    )


class Settings(BaseSettings):
    """
    Root settings object.

    Example:
        export REPORT_SYNC_DATABASE__PATH="/var/lib/report-sync/report.db"
        export REPORT_SYNC_SYNC__ALLOWED_FRESHNESS_GAP_MINUTES=30
        settings = Settings()
    """

    model_config = SettingsConfigDict(
        env_prefix="REPORT_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """
        Build settings from a config file.

        Args:
            path: A ``.toml``/``.tml`` or ``.json`` file

        Raises:
            FileNotFoundError: The file does not exist
            ValueError: The suffix is neither TOML nor JSON
        """
        return cls.model_validate(_read_config_file(Path(path)))

    def to_file(self, path: Path | str) -> None:
        """Write the settings out with API secrets masked."""
        path = Path(path)
        sections = self.model_dump(mode="json", exclude_none=True)

        api_section = sections.get("api", {})
        for name in SECRET_API_FIELDS:
            if api_section.get(name):
                api_section[name] = "***REDACTED***"

        if path.suffix in TOML_SUFFIXES:
            path.write_text(_render_toml(sections))
        else:
            path.write_text(json.dumps(sections, indent=2))

    def validate_credentials(self) -> list[str]:
        """Problems preventing authenticated requests; empty when none."""
        errors = []
        key = self.api.api_key.get_secret_value()
        secret = self.api.api_secret.get_secret_value()
        if not (key and secret) and not self.api.auth_token.get_secret_value():
            errors.append("api_key/api_secret or auth_token is required")
        if not self.api.base_url:
            errors.append("api base_url is required")
        return errors


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    if path.suffix in TOML_SUFFIXES:
        import tomllib

        return tomllib.loads(path.read_text())
    if path.suffix == ".json":
        return json.loads(path.read_text())
    raise ValueError(f"Unsupported config format: {path.suffix}")


def _render_toml(sections: dict[str, Any]) -> str:
    # Every settings field is a flat section of scalars and lists
    lines: list[str] = []
    for section, values in sections.items():
        lines.append(f"[{section}]")
        lines.extend(f"{key} = {json.dumps(value)}" for key, value in values.items())
        lines.append("")
    return "\n".join(lines)


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Resolve settings for a CLI run.

    Args:
        config_file: Optional TOML or JSON file
        **overrides: Section values taking precedence over the file,
            e.g. ``database={"path": "other.db"}``

    Returns:
        Configured Settings instance
    """
    if not config_file:
        return Settings(**overrides)
    data = _read_config_file(Path(config_file))
    return Settings(**_merge(data, overrides))
