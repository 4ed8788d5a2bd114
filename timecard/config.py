from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta, timezone


STORAGE_MEMORY = "memory"
STORAGE_GOOGLE_SHEETS = "google_sheets"
STORAGE_BACKENDS = {STORAGE_MEMORY, STORAGE_GOOGLE_SHEETS}

IDENTITY_SESSION = "session"
IDENTITY_HEADER = "header"
IDENTITY_MODES = {IDENTITY_SESSION, IDENTITY_HEADER}

DEFAULT_IDENTITY_HEADER = "X-Goog-Authenticated-User-Email"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    storage: str
    spreadsheet_id: str
    identity: str
    identity_header: str
    login_url: str
    admin_emails: frozenset[str]
    secret_key: str
    https_only: bool
    tz_offset_hours: float
    log_level: str

    @property
    def display_tz(self) -> timezone:
        return timezone(timedelta(hours=self.tz_offset_hours))


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _env_flag(name: str, default: str = "0") -> bool:
    return _env(name, default).lower() in {"1", "true", "yes", "on"}


def _parse_emails(raw: str) -> frozenset[str]:
    return frozenset(p.strip().lower() for p in str(raw or "").split(",") if p.strip())


def load_settings() -> Settings:
    storage = _env("TIMECARD_STORAGE", STORAGE_MEMORY).lower()
    if storage == "inmemory":
        storage = STORAGE_MEMORY
    if storage not in STORAGE_BACKENDS:
        raise ConfigError(f"TIMECARD_STORAGE must be one of {sorted(STORAGE_BACKENDS)}, got {storage!r}.")

    spreadsheet_id = _env("GOOGLE_SHEETS_SPREADSHEET_ID")
    if storage == STORAGE_GOOGLE_SHEETS and not spreadsheet_id:
        raise ConfigError("GOOGLE_SHEETS_SPREADSHEET_ID is required when TIMECARD_STORAGE=google_sheets.")

    identity = _env("TIMECARD_IDENTITY", IDENTITY_SESSION).lower()
    if identity not in IDENTITY_MODES:
        raise ConfigError(f"TIMECARD_IDENTITY must be one of {sorted(IDENTITY_MODES)}, got {identity!r}.")

    raw_offset = _env("TIMECARD_TZ_OFFSET_HOURS", "0")
    try:
        tz_offset_hours = float(raw_offset)
    except ValueError:
        raise ConfigError(f"TIMECARD_TZ_OFFSET_HOURS must be a number, got {raw_offset!r}.") from None
    if not -24 < tz_offset_hours < 24:
        raise ConfigError("TIMECARD_TZ_OFFSET_HOURS must be between -24 and 24.")

    return Settings(
        storage=storage,
        spreadsheet_id=spreadsheet_id,
        identity=identity,
        identity_header=_env("TIMECARD_IDENTITY_HEADER", DEFAULT_IDENTITY_HEADER),
        login_url=_env("TIMECARD_LOGIN_URL"),
        admin_emails=_parse_emails(_env("TIMECARD_ADMIN_EMAILS")),
        secret_key=_env("TIMECARD_SECRET_KEY"),
        https_only=_env_flag("TIMECARD_HTTPS_ONLY"),
        tz_offset_hours=tz_offset_hours,
        log_level=_env("TIMECARD_LOG_LEVEL", "INFO").upper(),
    )
