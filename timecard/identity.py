from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from starlette.requests import Request

from timecard.config import IDENTITY_HEADER, Settings


SESSION_EMAIL_KEY = "auth_email"

LOGIN_PATH = "/login"
IAP_PREFIX = "accounts.google.com:"


class IdentityError(RuntimeError):
    pass


@dataclass(frozen=True)
class CurrentUser:
    email: str

    def __str__(self) -> str:
        return self.email


class IdentityProvider:
    def current_user(self, request: Request) -> Optional[CurrentUser]:  # pragma: no cover - interface
        raise NotImplementedError

    def login_url(self, request: Request, dest: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError


def _with_continue(base: str, dest: str) -> str:
    parts = urlsplit(base)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append(("continue", dest))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def login_session(session: dict, *, email: str) -> None:
    session[SESSION_EMAIL_KEY] = email


def logout_session(session: dict) -> None:
    session.pop(SESSION_EMAIL_KEY, None)


class SessionIdentityProvider(IdentityProvider):
    """Identity held in the signed session cookie, set by the /login page.

    The page takes any email without a password, so this is for local
    development only.
    """

    def current_user(self, request: Request) -> Optional[CurrentUser]:
        email = request.session.get(SESSION_EMAIL_KEY)
        if not isinstance(email, str) or not email:
            return None
        return CurrentUser(email=email)

    def login_url(self, request: Request, dest: str) -> str:
        return _with_continue(LOGIN_PATH, dest)


class HeaderIdentityProvider(IdentityProvider):
    """Identity asserted by an identity-aware proxy in front of the app.

    The proxy authenticates the caller and forwards the email in a header,
    e.g. ``X-Goog-Authenticated-User-Email: accounts.google.com:alice@example.com``.
    Only deploy this behind such a proxy; the header is trusted as-is.
    """

    def __init__(self, *, header: str, login_url: str) -> None:
        self._header = header
        self._login_url = login_url

    def current_user(self, request: Request) -> Optional[CurrentUser]:
        raw = (request.headers.get(self._header) or "").strip()
        if raw.startswith(IAP_PREFIX):
            raw = raw[len(IAP_PREFIX):]
        if not raw:
            return None
        return CurrentUser(email=raw)

    def login_url(self, request: Request, dest: str) -> str:
        if not self._login_url:
            raise IdentityError("TIMECARD_LOGIN_URL is not configured")
        return _with_continue(self._login_url, dest)


def provider_from_settings(settings: Settings) -> IdentityProvider:
    if settings.identity == IDENTITY_HEADER:
        return HeaderIdentityProvider(header=settings.identity_header, login_url=settings.login_url)
    return SessionIdentityProvider()
