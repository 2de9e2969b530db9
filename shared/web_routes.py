"""Custom aiohttp routes exposed next to the health endpoints."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from shared.config import get_intake_token

log = logging.getLogger("dtm.web.routes")

INTAKE_PATH = "/hooks/form-submission"
INTAKE_TOKEN_HEADER = "X-Intake-Token"
_MAX_BODY_BYTES = 256 * 1024

IntakeHandler = Callable[[Any], Awaitable[Any]]


def _token_ok(request: web.Request, expected: str) -> bool:
    supplied = request.headers.get(INTAKE_TOKEN_HEADER, "")
    return bool(expected) and hmac.compare_digest(supplied.encode(), expected.encode())


def mount_intake_route(
    app: web.Application,
    *,
    recorder: IntakeHandler | None = None,
    token_provider: Callable[[], str] = get_intake_token,
) -> None:
    """Register ``POST /hooks/form-submission`` if not already mounted.

    The route is disabled (404) while ``INTAKE_TOKEN`` is unset.
    """

    if app.get("_intake_mounted"):
        return

    from modules.downtime.intake import FormSubmission, IntakeError, record_submission

    record = recorder or record_submission

    async def handle(request: web.Request) -> web.StreamResponse:
        expected = token_provider()
        if not expected:
            raise web.HTTPNotFound(text="intake disabled")
        if not _token_ok(request, expected):
            log.warning("intake rejected: bad token", extra={"remote": request.remote or "-"})
            raise web.HTTPUnauthorized(text="invalid token")
        if request.content_length and request.content_length > _MAX_BODY_BYTES:
            raise web.HTTPRequestEntityTooLarge(
                max_size=_MAX_BODY_BYTES, actual_size=request.content_length
            )

        try:
            payload = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="body must be JSON") from exc
        if not isinstance(payload, dict):
            raise web.HTTPBadRequest(text="body must be a JSON object")

        try:
            submission = FormSubmission.from_payload(payload)
            result = await record(submission)
        except IntakeError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=422)
        except web.HTTPException:
            raise
        except Exception as exc:
            log.exception("intake processing error")
            raise web.HTTPInternalServerError(text="intake failed") from exc

        return web.json_response(
            {
                "ok": True,
                "sheet": result.sheet,
                "row": result.response_row,
                "character": result.character,
                "notice_sent": result.notice_sent,
                "warnings": list(result.warnings),
            }
        )

    app.router.add_post(INTAKE_PATH, handle)
    app["_intake_mounted"] = True
    log.debug("%s route registered", INTAKE_PATH)
