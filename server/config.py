"""
Environment configuration for the device group server.

Settings are read lazily from environment variables so tests and
maintenance scripts can override them before first use.
"""
import os
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration backed by environment variables"""

    def __init__(self):
        self._database_url: Optional[str] = None

    @property
    def database_url(self) -> str:
        """
        Get the database URL.

        Priority:
        1. DATABASE_URL environment variable
        2. Fallback: local SQLite file ./data.db
        """
        if self._database_url is None:
            self._database_url = os.getenv("DATABASE_URL", "sqlite:///./data.db")
        return self._database_url

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def check_account_allow_notify(self) -> bool:
        """Defer a group's "allow notify" to its owning account when asked to"""
        return _env_bool("DEVICE_GROUP_CHECK_ACCOUNT_ALLOW_NOTIFY", False)

    @property
    def event_counts_exact(self) -> bool:
        """
        Whether the event table can report exact row counts cheaply.

        Set EVENT_COUNTS_EXACT=false for engines (MySQL/InnoDB) where a
        full count is too expensive; counts then come back indeterminate.
        """
        return _env_bool("EVENT_COUNTS_EXACT", True)

    @property
    def sweep_pacing_enabled(self) -> bool:
        """Sleep between devices during old-event sweeps"""
        return _env_bool("SWEEP_PACING_ENABLED", True)

    def get_admin_key(self) -> Optional[str]:
        """Get the admin API key from environment"""
        return os.getenv("ADMIN_KEY")

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate that required configuration is present.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        url = self.database_url
        if not url:
            errors.append("DATABASE_URL is empty")
        elif self.is_sqlite:
            warnings.append("Using SQLite database - set DATABASE_URL for production")

        admin_key = self.get_admin_key()
        if not admin_key:
            warnings.append("ADMIN_KEY environment variable not set - using default (insecure)")
        elif len(admin_key) < 16:
            warnings.append("ADMIN_KEY should be at least 16 characters for security")
        elif admin_key in ("admin", "changeme"):
            warnings.append("ADMIN_KEY using default/insecure value - change for production")

        if not self.event_counts_exact:
            warnings.append("EVENT_COUNTS_EXACT=false - old-event counts will be reported as unknown")

        return (len(errors) == 0, errors, warnings)


config = Config()
