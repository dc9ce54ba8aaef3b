"""
deps.py — FastAPI dependencies wiring app.state resources into the engine.

app.state resources (redis, http, mistral, ocr_semaphore) are set in main.py lifespan.
"""
from fastapi import Request

from boxscan.cache import RecordStore
from boxscan.config import settings
from boxscan.finalize.dispatcher import FinalizationDispatcher
from boxscan.sessions.engine import ScanSessionEngine
from boxscan.store import SessionRepository


def get_repository(request: Request) -> SessionRepository:
    return SessionRepository(RecordStore(request.app.state.redis))


def get_engine(request: Request) -> ScanSessionEngine:
    return ScanSessionEngine(get_repository(request), app_url=settings.app_url)


def get_dispatcher(request: Request) -> FinalizationDispatcher:
    return FinalizationDispatcher(
        get_repository(request),
        request.app.state.http,
        settings.bot_webhook_url,
    )
