from __future__ import annotations

import base64
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import gspread
import requests
from google.auth.exceptions import GoogleAuthError

from timecard.config import STORAGE_GOOGLE_SHEETS, Settings


log = logging.getLogger("timecard")

# Everything the hosted backend can raise for a failed call.
BACKEND_ERRORS = (gspread.exceptions.GSpreadException, requests.RequestException, GoogleAuthError)

PUNCH_ARRIVAL = "arrival"
PUNCH_LEAVE = "leave"
PUNCH_TYPES = {PUNCH_ARRIVAL, PUNCH_LEAVE}

TAB_PUNCHES = "Punches"
TAB_USERS = "Users"

SHEETS_SCHEMA: dict[str, list[str]] = {
    TAB_PUNCHES: [
        "punch_id",
        "parent",
        "puncher",
        "type",
        "time",
    ],
    TAB_USERS: [
        "user_id",
        "parent",
        "email",
        "name",
        "enabled",
    ],
}


def punch_key() -> str:
    """Parent key every punch is stored under."""
    return "Punch/default_punch"


def user_key() -> str:
    """Parent key every user is stored under."""
    return "User/default_user"


def _as_bool(value: object) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _to_csv_bool(value: bool) -> str:
    return "true" if value else "false"


def _parse_time(raw: str) -> datetime:
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class Punch:
    puncher: str
    type: str
    time: datetime


@dataclass(frozen=True)
class User:
    email: str
    name: str
    enabled: bool

    def to_dict(self) -> dict[str, object]:
        return {"email": self.email, "name": self.name, "enabled": self.enabled}


class StorageError(RuntimeError):
    pass


class BaseTableGateway:
    def read_rows(self, tab: str) -> list[dict[str, str]]:  # pragma: no cover - interface
        raise NotImplementedError

    def append_row(self, tab: str, row: dict[str, str]) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryTableGateway(BaseTableGateway):
    def __init__(self) -> None:
        self._rows: dict[str, list[dict[str, str]]] = {tab: [] for tab in SHEETS_SCHEMA}

    def read_rows(self, tab: str) -> list[dict[str, str]]:
        return [dict(row) for row in self._rows[tab]]

    def append_row(self, tab: str, row: dict[str, str]) -> None:
        self._rows[tab].append(dict(row))


class GoogleSheetsGateway(BaseTableGateway):
    """Tabs of one spreadsheet, opened through an authorized gspread client."""

    def __init__(self, client: gspread.Client, spreadsheet_id: str) -> None:
        try:
            self._book = client.open_by_key(spreadsheet_id)
            self._ensure_tabs()
        except BACKEND_ERRORS as e:
            raise StorageError(f"failed to open spreadsheet {spreadsheet_id}: {e}") from e

    def _ensure_tabs(self) -> None:
        existing = {ws.title for ws in self._book.worksheets()}
        for tab, headers in SHEETS_SCHEMA.items():
            if tab not in existing:
                ws = self._book.add_worksheet(title=tab, rows=1000, cols=len(headers))
                ws.append_row(headers, value_input_option="RAW")
                continue
            first_row = self._book.worksheet(tab).row_values(1)
            if not first_row:
                self._book.worksheet(tab).append_row(headers, value_input_option="RAW")
            elif first_row != headers:
                # Someone else's sheet, or an older layout; never overwrite it.
                raise StorageError(f"tab {tab} has header {first_row}, expected {headers}")

    def read_rows(self, tab: str) -> list[dict[str, str]]:
        headers = SHEETS_SCHEMA[tab]
        try:
            values = self._book.worksheet(tab).get_all_values()
        except BACKEND_ERRORS as e:
            raise StorageError(f"failed to read {tab}: {e}") from e
        rows: list[dict[str, str]] = []
        for line in values[1:]:
            if not any(str(c).strip() for c in line):
                continue
            padded = list(line) + [""] * (len(headers) - len(line))
            rows.append(dict(zip(headers, (str(c) for c in padded))))
        return rows

    def append_row(self, tab: str, row: dict[str, str]) -> None:
        headers = SHEETS_SCHEMA[tab]
        try:
            # RAW keeps ISO timestamps and "true"/"false" from being coerced by Sheets.
            self._book.worksheet(tab).append_row([str(row.get(h, "")) for h in headers], value_input_option="RAW")
        except BACKEND_ERRORS as e:
            raise StorageError(f"failed to append to {tab}: {e}") from e


class TimecardStore:
    def __init__(self, gateway: BaseTableGateway) -> None:
        self._gw = gateway
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TimecardStore":
        if settings.storage != STORAGE_GOOGLE_SHEETS:
            return cls(MemoryTableGateway())
        return cls(GoogleSheetsGateway(sheets_client_from_env(), settings.spreadsheet_id))

    def _rows_under(self, tab: str, parent: str) -> list[dict[str, str]]:
        with self._lock:
            return [r for r in self._gw.read_rows(tab) if r.get("parent") == parent]

    def list_punches(self, *, limit: int = 10) -> list[Punch]:
        """Oldest punches first, at most ``limit`` of them."""
        punches: list[Punch] = []
        for row in self._rows_under(TAB_PUNCHES, punch_key()):
            try:
                at = _parse_time(str(row.get("time") or ""))
            except ValueError as e:
                raise StorageError(f"punch {row.get('punch_id')!r} has an unreadable time") from e
            punches.append(Punch(puncher=str(row.get("puncher") or ""), type=str(row.get("type") or ""), time=at))
        punches.sort(key=lambda p: p.time)
        return punches[: max(0, int(limit))]

    def put_punch(self, punch: Punch) -> str:
        if punch.type not in PUNCH_TYPES:
            raise ValueError("invalid_punch_type")
        punch_id = str(uuid.uuid4())
        row = {
            "punch_id": punch_id,
            "parent": punch_key(),
            "puncher": punch.puncher,
            "type": punch.type,
            "time": punch.time.astimezone(timezone.utc).isoformat(),
        }
        with self._lock:
            self._gw.append_row(TAB_PUNCHES, row)
        log.info("Stored %s punch %s for %s", punch.type, punch_id, punch.puncher)
        return punch_id

    def list_users(self) -> list[User]:
        users = [
            User(
                email=str(row.get("email") or ""),
                name=str(row.get("name") or ""),
                enabled=_as_bool(row.get("enabled", "true")),
            )
            for row in self._rows_under(TAB_USERS, user_key())
        ]
        users.sort(key=lambda u: u.name)
        return users

    def put_user(self, user: User) -> str:
        user_id = str(uuid.uuid4())
        row = {
            "user_id": user_id,
            "parent": user_key(),
            "email": user.email,
            "name": user.name,
            "enabled": _to_csv_bool(user.enabled),
        }
        with self._lock:
            self._gw.append_row(TAB_USERS, row)
        log.info("Stored user %s (%s)", user_id, user.email)
        return user_id


def sheets_client_from_env() -> gspread.Client:
    """Authorize gspread with a service account from a key file or base64 JSON."""
    key_file = (os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "") or "").strip()
    encoded = (os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON_BASE64", "") or "").strip()
    try:
        if key_file and Path(key_file).exists():
            return gspread.service_account(filename=key_file)
        if encoded:
            info = json.loads(base64.b64decode(encoded))
            return gspread.service_account_from_dict(info)
    except (ValueError, GoogleAuthError) as e:
        raise StorageError(f"unusable Google service account credentials: {e}") from e
    raise StorageError("Google credentials are missing. Set GOOGLE_APPLICATION_CREDENTIALS or GOOGLE_SERVICE_ACCOUNT_JSON_BASE64")
