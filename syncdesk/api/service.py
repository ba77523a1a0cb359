"""
SyncDesk - API Service

Thin FastAPI layer over the SyncDesk facade:
- Google OAuth connect per scope (mail, calendar)
- Mail and calendar sync
- Free-text scheduling and focus-time suggestions

Provider and credential errors are mapped to HTTP status codes with a JSON
`{"error": ..., "message": ...}` body.
"""
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from syncdesk import __version__
from syncdesk.api.models import (
    CalendarSyncRequest,
    ConnectedResponse,
    ErrorResponse,
    FocusSuggestRequest,
    MailSyncRequest,
    ScheduleRequest,
)
from syncdesk.auth.oauth import OAuthStateError
from syncdesk.config import Config
from syncdesk.core import SyncDesk
from syncdesk.data.models import (
    CalendarSyncResult,
    FocusSuggestion,
    MailSyncResult,
    Scope,
    ScheduleResult,
    ScheduleStatus,
)
from syncdesk.errors import (
    AuthExpired,
    AuthTransient,
    InvalidTimezone,
    NotConnected,
    ProviderRateLimited,
    ProviderUnavailable,
    SyncDeskError,
)
from syncdesk.utils.logger import configure_logging

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidTimezone: 400,
    AuthExpired: 401,
    NotConnected: 404,
    ProviderRateLimited: 429,
    AuthTransient: 503,
    ProviderUnavailable: 503,
}

# Documented error bodies for routes that reach Google on the user's behalf
ERROR_RESPONSES = {
    status: {"model": ErrorResponse} for status in sorted(set(ERROR_STATUS.values()))
}

SCHEDULE_STATUS = {
    ScheduleStatus.CREATED: 201,
    ScheduleStatus.INVALID: 400,
    ScheduleStatus.CONFLICT: 409,
    ScheduleStatus.AUTH_EXPIRED: 401,
    ScheduleStatus.NOT_CONNECTED: 404,
    ScheduleStatus.FAILED: 503,
}

app = FastAPI(title="SyncDesk", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_desk: Optional[SyncDesk] = None


def get_desk() -> SyncDesk:
    """Process-wide SyncDesk, built on first use."""
    global _desk
    if _desk is None:
        _desk = SyncDesk()
    return _desk


def status_for(error: SyncDeskError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


@app.exception_handler(SyncDeskError)
async def syncdesk_error_handler(request: Request, exc: SyncDeskError):
    status = status_for(exc)
    headers = {}
    if isinstance(exc, ProviderRateLimited) and exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))
    logger.warning(f"[API] {request.method} {request.url.path} -> {status} {exc.code}: {exc}")
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=exc.code, message=str(exc)).model_dump(),
        headers=headers,
    )


# ------------------------------------------------------------------
# HEALTH
# ------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__, "environment": Config.ENVIRONMENT}


# ------------------------------------------------------------------
# OAUTH
# ------------------------------------------------------------------
@app.get("/auth/google/{scope}")
async def google_oauth_init(scope: str, user_id: str = Query("default"), desk: SyncDesk = Depends(get_desk)):
    """
    Starts the Google OAuth flow for one scope and redirects to the consent screen.
    """
    try:
        scope = Scope(scope)
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={"error": "invalidScope", "message": f"Scope must be one of: {', '.join(s.value for s in Scope)}"},
        )

    if not Config.GOOGLE_CLIENT_ID or not Config.GOOGLE_CLIENT_SECRET:
        return JSONResponse(
            status_code=503,
            content={
                "error": "oauthNotConfigured",
                "message": "Administrator must set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET environment variables",
            },
        )

    auth_url, _ = desk.oauth.get_authorization_url(user_id, scope)
    return RedirectResponse(url=auth_url)


@app.get("/auth/callback", response_model=ConnectedResponse, responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}})
async def google_oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    desk: SyncDesk = Depends(get_desk),
):
    """Exchanges the authorization code and stores the credential."""
    if error:
        return JSONResponse(status_code=400, content={"error": "oauthDenied", "message": error})
    if not code or not state:
        return JSONResponse(
            status_code=400,
            content={"error": "invalidCallback", "message": "Authorization code or state missing"},
        )

    try:
        credential = await desk.oauth.exchange_code_async(code, state)
    except OAuthStateError as e:
        return JSONResponse(status_code=400, content={"error": "invalidState", "message": str(e)})

    return ConnectedResponse(
        user_id=credential.user_id,
        scope=credential.scope.value,
        account_email=credential.account_email,
    )


# ------------------------------------------------------------------
# SYNC
# ------------------------------------------------------------------
@app.post("/sync/mail", response_model=MailSyncResult, responses=ERROR_RESPONSES)
async def sync_mail(request: MailSyncRequest, desk: SyncDesk = Depends(get_desk)):
    return await desk.request_mail_sync(request.user_id, page_token=request.page_token)


@app.post("/sync/calendar", response_model=CalendarSyncResult, responses=ERROR_RESPONSES)
async def sync_calendar(request: CalendarSyncRequest, desk: SyncDesk = Depends(get_desk)):
    return await desk.request_calendar_sync(request.user_id)


# ------------------------------------------------------------------
# SCHEDULING
# ------------------------------------------------------------------
@app.post("/schedule", response_model=ScheduleResult)
async def schedule(request: ScheduleRequest, desk: SyncDesk = Depends(get_desk)):
    result = await desk.request_schedule_from_text(request.user_id, request.text, request.timezone)
    return JSONResponse(
        status_code=SCHEDULE_STATUS.get(result.status, 200),
        content=result.model_dump(mode="json"),
    )


@app.post("/schedule/suggest", response_model=FocusSuggestion, responses=ERROR_RESPONSES)
async def suggest_focus_time(request: FocusSuggestRequest, desk: SyncDesk = Depends(get_desk)):
    """First free focus slot in the coming days and a task to spend it on."""
    return await desk.request_focus_suggestion(request.user_id, request.timezone, request.minutes)


# ------------------------------------------------------------------
# STARTUP
# ------------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    configure_logging()
    Config.validate()
    logger.info(f"[API] SyncDesk {__version__} started ({Config.ENVIRONMENT})")


def main():
    import uvicorn

    uvicorn.run("syncdesk.api.service:app", host="0.0.0.0", port=8000)
