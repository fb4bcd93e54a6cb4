import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import models_invoice  # noqa: F401 - register tables with Base
from .auth import decode_access_token
from .config import (
    POLLER_CONCURRENCY,
    POLLER_ENABLED,
    POLLER_GRACE_SECONDS,
    POLLER_INTERVAL_SECONDS,
    REFUND_CUTOFF_HOURS,
    RobokassaSettings,
)
from .database import Base, SessionLocal, engine
from .domain.payments.router import router as payments_router
from .routes.robokassa_webhooks import router as robokassa_webhooks_router
from .services.notification_service import (
    NotificationDispatcher,
    NotificationPublisher,
    WebSocketNotificationDispatcher,
)
from .services.payment_poller import ReconciliationPoller
from .services.robokassa_service import PaymentGateway, RobokassaClient
from .webhook_security import SignatureVerifier

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")


def create_app(
    settings: Optional[RobokassaSettings] = None,
    gateway: Optional[PaymentGateway] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    start_poller: bool = POLLER_ENABLED,
    refund_cutoff: timedelta = timedelta(hours=REFUND_CUTOFF_HOURS),
) -> FastAPI:
    """Build the API with its payment collaborators; tests pass fakes here"""
    settings = settings or RobokassaSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        try:
            bind = getattr(session_factory, "kw", {}).get("bind") or engine
            Base.metadata.create_all(bind=bind, checkfirst=True)
            logger.info("Database tables created successfully")
        except Exception as e:
            # Ignore "already exists" errors from race conditions between workers
            error_msg = str(e)
            if "already exists" in error_msg or "duplicate key" in error_msg:
                logger.info("Database tables already exist (created by another worker)")
            else:
                logger.error(f"Failed to create database tables: {e}")

        verifier = SignatureVerifier(settings)
        active_gateway = gateway or RobokassaClient(settings, verifier)
        publisher = NotificationPublisher(dispatcher or WebSocketNotificationDispatcher())
        poller = ReconciliationPoller(
            session_factory,
            active_gateway,
            publisher,
            interval=POLLER_INTERVAL_SECONDS,
            grace=timedelta(seconds=POLLER_GRACE_SECONDS),
            concurrency=POLLER_CONCURRENCY,
            refund_cutoff=refund_cutoff,
        )

        app.state.robokassa_settings = settings
        app.state.verifier = verifier
        app.state.gateway = active_gateway
        app.state.notifier = publisher
        app.state.poller = poller
        app.state.refund_cutoff = refund_cutoff

        if start_poller:
            poller.start()

        yield

        logger.info("Application shutting down...")
        await poller.stop()
        await publisher.drain()
        await active_gateway.aclose()

    app = FastAPI(title="Wax Hands Payments API", version="1.0.0", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"⚠️ Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(robokassa_webhooks_router)
    app.include_router(payments_router)

    @app.websocket("/ws/notifications")
    async def notifications_socket(websocket: WebSocket, token: str = ""):
        publisher: NotificationPublisher = websocket.app.state.notifier
        ws_dispatcher = publisher.dispatcher
        try:
            user = decode_access_token(token)
        except HTTPException:
            await websocket.close(code=1008)
            return
        if not isinstance(ws_dispatcher, WebSocketNotificationDispatcher):
            await websocket.close(code=1011)
            return

        await websocket.accept()
        ws_dispatcher.connect(user.user_id, websocket)
        try:
            while True:
                await websocket.receive_text()  # keep-alive pings from the client
        except WebSocketDisconnect:
            pass
        finally:
            ws_dispatcher.disconnect(user.user_id, websocket)

    @app.get("/")
    def root():
        return {"message": "Wax Hands Payments API is running"}

    @app.get("/health")
    def health(request: Request):
        poller: ReconciliationPoller = request.app.state.poller
        summary = poller.last_summary
        return {
            "status": "healthy",
            "poller_running": poller.is_running,
            "last_cycle": None
            if summary is None
            else {"checked": summary.checked, "updated": summary.updated, "failed": summary.failed},
        }

    return app


app = create_app()
