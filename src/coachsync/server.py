import asyncio
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

import pytz
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from .calendar_manager import CalendarManager, ConnectionNotFoundError
from .config import Settings, load_settings
from .database import DatabaseManager
from .hooks import SessionHooks
from .models import CalendarConnection, CalendarProvider, ConnectionSettingsUpdate, SyncOperation
from .providers import ProviderNotConfiguredError, create_adapters
from .reconciliation import Reconciler
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

app = FastAPI(title="CoachSync Server", version="1.0")

# Never returned by the HTTP surface
SECRET_FIELDS = {'access_token', 'refresh_token'}


class SyncRuntime:
    """Owns the shared components and the periodic loops of one process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db_manager = DatabaseManager(settings)
        self.adapters = create_adapters(settings, self.db_manager)
        self.engine = SyncEngine(settings, self.db_manager, self.adapters)
        self.queue = self.engine.queue
        self.reminders = self.engine.reminders
        self.reconciler = Reconciler(self.db_manager, self.adapters, self.queue)
        self.calendar_manager = CalendarManager(settings, self.db_manager, self.adapters, self.queue)
        self.hooks = SessionHooks(self.queue, self.reminders)

        self.trigger = asyncio.Event()
        self.running = True
        self.tasks: List[asyncio.Task] = []
        self.last_job_at: Optional[datetime] = None
        self.last_reminder_sweep: Optional[datetime] = None
        self.last_maintenance: Optional[datetime] = None

    def start(self) -> None:
        self.db_manager.init_db()
        self.tasks = [
            asyncio.create_task(self.run_jobs()),
            asyncio.create_task(self.run_reminders()),
            asyncio.create_task(self.run_maintenance()),
        ]

    async def stop(self) -> None:
        self.running = False
        self.signal()
        for task in self.tasks:
            task.cancel()
        for task in self.tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.engine.cleanup()

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self.trigger.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self.trigger.clear()

    async def run_jobs(self):
        """Drain the sync queue; sleep between polls once it is empty."""
        while self.running:
            try:
                claimed = await self.engine.process_jobs(max_jobs=1)
                if claimed:
                    self.last_job_at = datetime.now(pytz.UTC)
                    continue
            except Exception:
                logger.exception("Sync job loop failed")
            await self._wait(self.settings.sync_poll_seconds)

    async def reminder_sweep(self) -> None:
        await self.reminders.process_due_reminders()
        await self.reminders.check_upcoming_sessions()
        self.last_reminder_sweep = datetime.now(pytz.UTC)

    async def run_reminders(self):
        while self.running:
            try:
                await self.reminder_sweep()
            except Exception:
                logger.exception("Reminder sweep failed")
            await asyncio.sleep(self.settings.reminder_interval_minutes * 60)

    async def maintenance(self) -> None:
        """Abandoned jobs, old reminders, orphaned jobs, then duplicate events; each step runs even if one fails."""
        steps = [
            ('stale jobs', self.queue.release_stale_jobs),
            ('old reminders', self.reminders.cleanup_old_reminders),
            ('orphaned jobs', self.reconciler.cleanup_failed_sync_jobs),
            ('duplicate events', self.reconciler.cleanup_all_duplicate_events),
        ]
        for name, step in steps:
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"Maintenance step '{name}' failed")
        self.last_maintenance = datetime.now(pytz.UTC)

    async def run_maintenance(self):
        while self.running:
            await self.maintenance()
            await asyncio.sleep(self.settings.maintenance_interval_hours * 3600)


class ManualSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation: SyncOperation = SyncOperation.FULL_SYNC
    session_id: Optional[UUID] = Field(None, alias='sessionId')


def get_runtime(request: Request) -> SyncRuntime:
    return request.app.state.runtime


async def require_api_token(request: Request, x_api_token: Optional[str] = Header(None)):
    expected = request.app.state.settings.api_token
    if expected and x_api_token != expected:
        raise HTTPException(status_code=401, detail="invalid api token")


def _public(connection: CalendarConnection) -> dict:
    return connection.model_dump(mode='json', exclude=SECRET_FIELDS)


@app.on_event("startup")
async def on_startup():
    settings = getattr(app.state, 'settings', None) or load_settings()
    app.state.settings = settings
    app.state.runtime = SyncRuntime(settings)
    app.state.runtime.start()


@app.on_event("shutdown")
async def on_shutdown():
    runtime: SyncRuntime = app.state.runtime
    await runtime.stop()


@app.get("/health")
async def health(runtime: SyncRuntime = Depends(get_runtime)):
    def iso(value):
        return value.isoformat() if value else None

    return {
        "ok": True,
        "queue": runtime.queue.count_by_status(),
        "last_job_at": iso(runtime.last_job_at),
        "last_reminder_sweep": iso(runtime.last_reminder_sweep),
        "last_maintenance": iso(runtime.last_maintenance),
        "poll_seconds": runtime.settings.sync_poll_seconds,
    }


@app.get("/calendar/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    runtime: SyncRuntime = Depends(get_runtime)
):
    try:
        url = await runtime.calendar_manager.complete_oauth_callback(code, state, error)
    except Exception:
        logger.exception("Error handling OAuth callback")
        url = f"{runtime.calendar_manager.redirect_base}?error=callback_failed"
    runtime.signal()
    return RedirectResponse(url, status_code=302)


@app.get("/calendar/connect/{provider}/{coach_id}", dependencies=[Depends(require_api_token)])
async def connect(provider: CalendarProvider, coach_id: UUID, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        auth_url = runtime.calendar_manager.get_auth_url(provider, coach_id)
    except ProviderNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, "authUrl": auth_url, "provider": provider.value}


@app.get("/calendar/connections/{coach_id}", dependencies=[Depends(require_api_token)])
async def list_connections(coach_id: UUID, runtime: SyncRuntime = Depends(get_runtime)):
    connections = runtime.calendar_manager.list_connections(coach_id)
    return {"success": True, "connections": [_public(c) for c in connections]}


@app.put("/calendar/connections/{connection_id}", dependencies=[Depends(require_api_token)])
async def update_connection(
    connection_id: UUID,
    update: ConnectionSettingsUpdate,
    runtime: SyncRuntime = Depends(get_runtime)
):
    try:
        connection = runtime.calendar_manager.update_settings(connection_id, update)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True, "message": "Connection settings updated", "connection": _public(connection)}


@app.post("/calendar/connections/{connection_id}/test", dependencies=[Depends(require_api_token)])
async def test_connection(connection_id: UUID, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        result = await runtime.calendar_manager.test_connection(connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {
        "success": result.get('success', False),
        "message": "Connection test successful" if result.get('success') else "Connection test failed",
        "error": result.get('error'),
        "calendarName": result.get('calendar_name'),
    }


@app.delete("/calendar/connections/{connection_id}", dependencies=[Depends(require_api_token)])
async def disconnect(connection_id: UUID, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        runtime.calendar_manager.disconnect(connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True, "message": "Calendar disconnected successfully"}


@app.post("/calendar/connections/{connection_id}/sync", dependencies=[Depends(require_api_token)])
async def trigger_sync(
    connection_id: UUID,
    body: Optional[ManualSyncRequest] = None,
    runtime: SyncRuntime = Depends(get_runtime)
):
    body = body or ManualSyncRequest()
    try:
        sync_id = runtime.calendar_manager.trigger_sync(connection_id, body.operation, body.session_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if sync_id is None:
        if body.operation == SyncOperation.CREATE and runtime.calendar_manager.is_session_synced(
            connection_id, body.session_id
        ):
            return {"success": True, "message": "Session already synced", "syncId": None}
        raise HTTPException(status_code=500, detail="Failed to queue sync operation")
    runtime.signal()
    return {"success": True, "message": "Sync operation queued", "syncId": str(sync_id)}


@app.get("/calendar/connections/{connection_id}/sync-status", dependencies=[Depends(require_api_token)])
async def sync_status(connection_id: UUID, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        status = runtime.calendar_manager.get_sync_status(connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True, **status}
