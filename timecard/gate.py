"""Request gate shared by every signed-in route.

Handlers are written as ``async def handler(request, user)`` and either
return a response, return ``None`` (an empty 200), or raise ``AppError``.
``app_handler`` turns such a handler into a FastAPI endpoint that first
resolves the caller's identity and converts ``AppError`` into a plain-text
error response.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from fastapi import Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response

from timecard.identity import CurrentUser, IdentityError, IdentityProvider


log = logging.getLogger("timecard")

Handler = Callable[[Request, CurrentUser], Awaitable[Optional[Response]]]


class AppError(Exception):
    def __init__(self, cause: BaseException | None, message: str, code: int = 500) -> None:
        super().__init__(message)
        self.cause = cause
        self.message = message
        self.code = code


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=302)


def app_handler(fn: Handler) -> Callable[[Request], Awaitable[Response]]:
    async def endpoint(request: Request) -> Response:
        identity: IdentityProvider = request.app.state.identity
        user = identity.current_user(request)
        if user is None:
            try:
                url = identity.login_url(request, str(request.url))
            except IdentityError as e:
                log.error("Failed to build login URL: %s", e)
                return PlainTextResponse(str(e), status_code=500)
            return redirect(url)

        try:
            resp = await fn(request, user)
        except AppError as e:
            log.error("%s %s: %s", request.method, request.url.path, e.cause if e.cause is not None else e.message)
            return PlainTextResponse(e.message, status_code=e.code)
        if resp is None:
            return Response(status_code=200)
        return resp

    # Not functools.wraps: FastAPI must see only the (request) signature.
    endpoint.__name__ = fn.__name__
    endpoint.__doc__ = fn.__doc__
    return endpoint
