"""Configuration management for Split Ledger."""

from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPLIT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database path
    database_path: Path = Path.home() / ".split_ledger" / "split_ledger.db"

    # Currency for groups created without one
    default_currency: str = Field(default="USD", pattern=r"^[A-Za-z]{3}$")

    # Unsettled splits older than this are overdue
    overdue_threshold_days: int = Field(default=30, ge=0)

    # Pending settlements older than this get reminders
    reminder_after_days: int = Field(default=7, ge=0)

    # Also write activity events to the log
    log_activity: bool = True

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path = self.database_path.expanduser()
        self.default_currency = self.default_currency.upper()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings(**overrides) -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings(**overrides)
    except (ValidationError, OSError) as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your SPLIT_LEDGER_* environment "
            f"variables or .env file.\n"
            f"Error: {e}"
        ) from e
