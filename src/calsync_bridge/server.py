"""HTTP surface: push notifications, OAuth redirects, user actions and the sweep endpoint."""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from fastapi import FastAPI, Request, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .config import Settings
from .exceptions import (
    AuthError, CalSyncError, ConnectionNotFoundError, ManualSyncThrottled, RecurrenceError,
    RemoteApiError, ValidationError,
)
from .models import Event, SyncReport, utc_now
from .recurrence import parse_rrule
from .runtime import SyncRuntime
from .webhooks import CHANNEL_TOKEN_HEADER, notification_from_headers

logger = logging.getLogger(__name__)


class EventIn(BaseModel):
    """Body of local event create/update requests."""

    title: str = Field("", max_length=255)
    description: str = Field("", max_length=5000)
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    is_recurring: bool = False
    rrule: Optional[str] = None
    exception_dates: List[date] = Field(default_factory=list)


def _report_body(report: SyncReport) -> dict:
    return {
        'success': True,
        'mode': report.mode.value if report.mode else None,
        'fallback_used': report.fallback_used,
        'imported': report.imported,
        'updated': report.updated,
        'deleted': report.deleted,
        'skipped': report.skipped + report.unchanged,
        'errors': report.errors,
    }


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[SyncRuntime] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment when omitted)
        runtime: Pre-built runtime (tests inject one with fakes)
        run_sweeper: Start the periodic sweep loop on startup
    """
    app = FastAPI(title="CalSync Bridge", version="1.0")

    @app.on_event("startup")
    async def on_startup():
        sync_runtime = runtime or SyncRuntime(settings or Settings())
        app.state.runtime = sync_runtime
        if run_sweeper:
            sync_runtime.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.runtime.stop()

    def rt(request: Request) -> SyncRuntime:
        return request.app.state.runtime

    # Error mapping

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={'error': str(exc)})

    @app.exception_handler(RecurrenceError)
    async def recurrence_error(request: Request, exc: RecurrenceError):
        return JSONResponse(status_code=400, content={'error': str(exc)})

    @app.exception_handler(PydanticValidationError)
    async def model_error(request: Request, exc: PydanticValidationError):
        return JSONResponse(status_code=422, content={'error': str(exc)})

    @app.exception_handler(ConnectionNotFoundError)
    async def not_found(request: Request, exc: ConnectionNotFoundError):
        return JSONResponse(status_code=404, content={'error': str(exc)})

    @app.exception_handler(AuthError)
    async def auth_error(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={'error': str(exc)})

    @app.exception_handler(ManualSyncThrottled)
    async def throttled(request: Request, exc: ManualSyncThrottled):
        return JSONResponse(
            status_code=429,
            content={'error': str(exc), 'retry_after': exc.retry_after_minutes},
            headers={'Retry-After': str(exc.retry_after_minutes * 60)},
        )

    @app.exception_handler(RemoteApiError)
    async def remote_error(request: Request, exc: RemoteApiError):
        return JSONResponse(status_code=502, content={'error': str(exc), 'remote_status': exc.status_code})

    # Endpoints

    @app.get("/health")
    async def health(request: Request):
        runtime_ = rt(request)
        last = runtime_.last_sweep
        return {
            "ok": True,
            "last_sweep": last.completed_at.isoformat() if last and last.completed_at else None,
            "interval_seconds": runtime_.loop_interval_seconds,
            "background_tasks": runtime_.background.pending,
        }

    @app.post("/webhooks/google")
    async def google_webhook(request: Request):
        runtime_ = rt(request)
        expected = runtime_.settings.webhook_channel_token
        if expected and request.headers.get(CHANNEL_TOKEN_HEADER) != expected:
            raise HTTPException(status_code=401, detail="invalid channel token")

        result = await runtime_.dispatcher.receive(notification_from_headers(request.headers))
        # Google expects a quick 2xx for every well-formed notification
        return JSONResponse(
            status_code=result.status_code,
            content={'success': True, 'outcome': result.outcome.value},
        )

    @app.get("/oauth/google/start")
    async def oauth_start(request: Request, user_id: str, origin: Optional[str] = None):
        runtime_ = rt(request)
        url = runtime_.oauth.authorization_url(user_id, origin or request.headers.get('referer'))
        return RedirectResponse(url, status_code=302)

    @app.get("/oauth/google/callback")
    async def oauth_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ):
        oauth = rt(request).oauth
        origin = oauth.settings.default_redirect_origin
        if state:
            try:
                origin = oauth.parse_state(state).origin
            except ValidationError:
                pass

        if error:
            logger.warning(f"OAuth error returned by provider: {error}")
            return RedirectResponse(oauth.result_url(origin, error), status_code=302)
        if not code or not state:
            return RedirectResponse(oauth.result_url(origin, "missing_code"), status_code=302)

        try:
            await oauth.handle_callback(code, state)
        except CalSyncError as e:
            logger.error(f"OAuth callback failed: {e}")
            return RedirectResponse(oauth.result_url(origin, "connection_failed"), status_code=302)
        return RedirectResponse(oauth.result_url(origin), status_code=302)

    @app.post("/users/{user_id}/sync")
    async def manual_sync(request: Request, user_id: str):
        report = await rt(request).connections.manual_sync(user_id)
        return _report_body(report)

    @app.post("/users/{user_id}/disconnect")
    async def disconnect(request: Request, user_id: str, remove_events: Optional[bool] = None):
        result = await rt(request).connections.disconnect(user_id, remove_events=remove_events)
        return {'success': True, **result}

    @app.post("/cron/sweep")
    async def cron_sweep(request: Request):
        runtime_ = rt(request)
        secret = runtime_.settings.cron_secret
        if secret and request.headers.get('authorization') != f"Bearer {secret}":
            raise HTTPException(status_code=401, detail="invalid cron secret")
        report = await runtime_.scheduler.sweep()
        runtime_.last_sweep = report
        return {
            'success': True,
            'synced': report.synced,
            'skipped': report.skipped,
            'errors': report.errors,
            'total': report.total,
        }

    @app.get("/users/{user_id}/events")
    async def list_events(
        request: Request,
        user_id: str,
        start: Optional[datetime] = Query(None),
        end: Optional[datetime] = Query(None),
    ):
        start = start or utc_now()
        end = end or start + timedelta(days=30)
        if start.tzinfo is None or end.tzinfo is None:
            raise ValidationError("start and end must carry a UTC offset")
        if end <= start:
            raise ValidationError("end must be after start")
        occurrences = rt(request).connections.list_window(user_id, start, end)
        return {'events': [o.model_dump(mode='json') for o in occurrences]}

    def _to_event(user_id: str, body: EventIn, **extra) -> Event:
        if body.rrule:
            parse_rrule(body.rrule)
        return Event(user_id=user_id, **body.model_dump(), **extra)

    @app.post("/users/{user_id}/events", status_code=201)
    async def create_event(request: Request, user_id: str, body: EventIn):
        event = rt(request).store.create_event(_to_event(user_id, body))
        return event.model_dump(mode='json')

    @app.put("/users/{user_id}/events/{event_id}")
    async def update_event(request: Request, user_id: str, event_id: str, body: EventIn):
        store = rt(request).store
        existing = store.get_event_by_id(event_id)
        if existing is None or existing.user_id != user_id:
            raise HTTPException(status_code=404, detail="event not found")
        event = store.update_event(_to_event(
            user_id, body,
            id=existing.id,
            external_id=existing.external_id,
            source=existing.source,
        ))
        return event.model_dump(mode='json')

    @app.delete("/users/{user_id}/events/{event_id}")
    async def delete_event(request: Request, user_id: str, event_id: str):
        store = rt(request).store
        existing = store.get_event_by_id(event_id)
        if existing is None or existing.user_id != user_id:
            raise HTTPException(status_code=404, detail="event not found")
        store.delete_event(event_id)
        return {'success': True}

    return app
