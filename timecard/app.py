from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from fastapi.templating import Jinja2Templates
from jinja2 import TemplateError
from starlette.middleware.sessions import SessionMiddleware

from timecard.config import load_settings
from timecard.gate import AppError, app_handler, redirect
from timecard.identity import (
    CurrentUser,
    SessionIdentityProvider,
    login_session,
    logout_session,
    provider_from_settings,
)
from timecard.store import PUNCH_ARRIVAL, PUNCH_LEAVE, Punch, StorageError, TimecardStore, User


log = logging.getLogger("timecard")

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
RECENT_PUNCHES = 10

_TRUE_LITERALS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_LITERALS = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(raw: str) -> bool:
    if raw in _TRUE_LITERALS:
        return True
    if raw in _FALSE_LITERALS:
        return False
    raise ValueError(f"invalid boolean {raw!r}")


def format_datetime(dt: datetime) -> str:
    return dt.astimezone(SETTINGS.display_tz).strftime("%Y-%m-%d %H:%M")


def _safe_continue(request: Request, raw: str | None) -> str:
    text = str(raw or "").strip()
    if not text:
        return "/"
    parts = urlsplit(text)
    if parts.netloc and parts.netloc != request.url.netloc:
        return "/"
    path = parts.path or "/"
    if not path.startswith("/") or path.startswith("//"):
        return "/"
    return urlunsplit(("", "", path, parts.query, ""))


SETTINGS = load_settings()

TEMPLATES_DIR = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

app = FastAPI(title="Timecard")
app.state.settings = SETTINGS
app.state.store = TimecardStore.from_settings(SETTINGS)
app.state.identity = provider_from_settings(SETTINGS)

_session_secret = SETTINGS.secret_key or secrets.token_urlsafe(48)
app.add_middleware(
    SessionMiddleware,
    secret_key=_session_secret,
    session_cookie="timecard_session",
    https_only=SETTINGS.https_only,
    same_site="lax",
)


@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(level=SETTINGS.log_level, format="%(asctime)s %(levelname)s %(message)s")
    log.info("Timecard started (storage=%s, identity=%s)", SETTINGS.storage, SETTINGS.identity)
    if not SETTINGS.secret_key:
        log.warning("TIMECARD_SECRET_KEY is not set. Session secret will rotate on restart.")
    if not SETTINGS.https_only:
        log.warning("TIMECARD_HTTPS_ONLY is off. Enable it in production.")
    if isinstance(app.state.identity, SessionIdentityProvider):
        log.warning("TIMECARD_IDENTITY=session signs in any email without a password. Use it for development only.")


@app.middleware("http")
async def _security_headers(request: Request, call_next):  # type: ignore
    response = await call_next(request)
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    if SETTINGS.https_only:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


def _store(request: Request) -> TimecardStore:
    return request.app.state.store


@app.get("/health", response_class=PlainTextResponse)
def health() -> str:
    return "ok"


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    if not isinstance(request.app.state.identity, SessionIdentityProvider):
        raise HTTPException(status_code=404)
    dest = _safe_continue(request, request.query_params.get("continue"))
    return templates.TemplateResponse(request, "login.html", {"continue_to": dest, "error": ""})


@app.post("/login")
async def login(request: Request):
    if not isinstance(request.app.state.identity, SessionIdentityProvider):
        raise HTTPException(status_code=404)
    form = await request.form()
    email = str(form.get("email", "") or "").strip()
    dest = _safe_continue(request, str(form.get("continue", "") or ""))
    if not email:
        return templates.TemplateResponse(
            request,
            "login.html",
            {"continue_to": dest, "error": "Email is required"},
            status_code=400,
        )
    login_session(request.session, email=email)
    log.info("Signed in %s", email)
    return redirect(dest)


@app.get("/logout")
def logout(request: Request):
    logout_session(request.session)
    return redirect("/")


async def root(request: Request, user: CurrentUser) -> Response:
    try:
        punches = _store(request).list_punches(limit=RECENT_PUNCHES)
    except StorageError as e:
        raise AppError(e, "Failed to fetch punches data from the datastore", 500)
    try:
        return templates.TemplateResponse(
            request,
            "root.html",
            {"user": user, "punches": punches, "format_datetime": format_datetime},
        )
    except TemplateError as e:
        raise AppError(e, "Failed to execute the root template", 500)


async def _create_punch(request: Request, user: CurrentUser, punch_type: str) -> None:
    punch = Punch(puncher=user.email, type=punch_type, time=datetime.now(tz=timezone.utc))
    try:
        _store(request).put_punch(punch)
    except StorageError as e:
        raise AppError(e, "Failed to put a punch data to the datastore", 500)


async def my_arrivals(request: Request, user: CurrentUser) -> Response | None:
    if request.method != "POST":
        return None
    await _create_punch(request, user, PUNCH_ARRIVAL)
    return redirect("/")


async def my_leaves(request: Request, user: CurrentUser) -> Response | None:
    if request.method != "POST":
        return None
    await _create_punch(request, user, PUNCH_LEAVE)
    return redirect("/")


def _is_admin(user: CurrentUser) -> bool:
    admins = SETTINGS.admin_emails
    if not admins:
        return True
    return user.email.lower() in admins


async def admin_users(request: Request, user: CurrentUser | None) -> Response:
    if user is None:
        raise AppError(None, "login needed", 500)
    if not _is_admin(user):
        raise AppError(None, "admin only", 403)

    if request.method == "GET":
        try:
            users = _store(request).list_users()
        except StorageError as e:
            raise AppError(e, "Failed to fetch users data from the datastore", 500)
        return JSONResponse({"users": [u.to_dict() for u in users]})

    if request.method == "POST":
        form = await request.form()
        raw_enabled = str(form.get("enabled", "") or "")
        enabled = True
        if raw_enabled:
            try:
                enabled = parse_bool(raw_enabled)
            except ValueError as e:
                raise AppError(e, f'Failed to parse the "enabled" parameter: {e}', 400)
        created = User(
            email=str(form.get("email", "") or ""),
            name=str(form.get("name", "") or ""),
            enabled=enabled,
        )
        try:
            _store(request).put_user(created)
        except StorageError as e:
            raise AppError(e, "Failed to put a user data to the datastore", 500)
        return JSONResponse({"user": created.to_dict()})

    raise AppError(None, "unsupported method", 400)


app.add_api_route("/", app_handler(root), methods=ALL_METHODS, response_class=HTMLResponse)
app.add_api_route("/my/arrivals", app_handler(my_arrivals), methods=ALL_METHODS)
app.add_api_route("/my/leaves", app_handler(my_leaves), methods=ALL_METHODS)
app.add_api_route("/api/admin/users", app_handler(admin_users), methods=ALL_METHODS)
