from __future__ import annotations

from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import MedCureException
from app.core.logging import setup_logging
from app.db.session import SessionLocal
from app.routers import notifications
from app.services.admission import build_admission_store
from app.services.email import send_email
from app.services.email_dispatcher import EmailDispatcher
from app.services.health_gate import HealthGate
from app.services.notification_cache import NotificationCache
from app.services.notifications_service import NotificationService, mark_email_sent


def build_notification_service() -> NotificationService:
    store = build_admission_store(settings.ADMISSION_BACKEND)
    dispatcher = EmailDispatcher(
        send_email,
        max_size=settings.EMAIL_QUEUE_MAX_SIZE,
        max_attempts=settings.EMAIL_MAX_ATTEMPTS,
        retry_delay_seconds=settings.EMAIL_RETRY_DELAY_SECONDS,
        on_delivered=partial(mark_email_sent, SessionLocal),
    )
    return NotificationService(
        store,
        health_gate=HealthGate(store, interval_minutes=settings.HEALTH_CHECK_INTERVAL_MINUTES),
        cache=NotificationCache(ttl_seconds=settings.NOTIFICATION_CACHE_TTL_SECONDS),
        email_dispatcher=dispatcher,
    )


def create_app(service: NotificationService | None = None) -> FastAPI:
    setup_logging(settings.LOG_LEVEL)
    notification_service = service or build_notification_service()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await notification_service.init(
            cache_sweep_seconds=settings.NOTIFICATION_CACHE_SWEEP_SECONDS,
            session_factory=SessionLocal if settings.HEALTH_SWEEP_LOOP_ENABLED else None,
            health_sweep_seconds=settings.HEALTH_SWEEP_LOOP_SECONDS,
        )
        try:
            yield
        finally:
            await notification_service.shutdown()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.notification_service = notification_service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])

    @app.get("/health", tags=["health"])
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.exception_handler(MedCureException)
    async def handle_medcure_exception(_: Request, exc: MedCureException) -> JSONResponse:
        headers = exc.headers if getattr(exc, "headers", None) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    return app


app = create_app()
