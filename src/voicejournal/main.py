"""
FastAPI application entry point.

The call engine (orchestrator, scheduler, dispatcher) needs speech,
transcription, journal and user-directory services supplied by the host
application through ``CallServices``. Without them the app still serves
the read-only ops endpoints.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.calls.dispatcher import CallDispatcher
from voicejournal.calls.retry import RetryScheduler
from voicejournal.calls.scheduler import CallScheduler, CallSchedulerConfig
from voicejournal.config import Settings, get_settings
from voicejournal.dialogue.completeness import HeuristicCompletenessChecker
from voicejournal.ops.router import router as ops_router
from voicejournal.orchestration.collaborators import (
    CompletenessChecker,
    DefaultPromptProvider,
    JournalMaterializer,
    PartialSessionPolicy,
    PromptTemplateProvider,
    SpeechSynthesisService,
    TranscriptionService,
    UserDirectory,
)
from voicejournal.orchestration.events import (
    EventBusProtocol,
    LifecycleEventPublisher,
    LoggingEventBus,
)
from voicejournal.orchestration.orchestrator import LiveCallOrchestrator, OrchestratorConfig
from voicejournal.shared.database import DatabaseManager, get_database_manager, get_db_session
from voicejournal.shared.exceptions import NotFoundError, ValidationError
from voicejournal.shared.logging import get_logger, setup_logging
from voicejournal.telephony.config import TelephonyConfig, get_telephony_config
from voicejournal.telephony.events import TelephonyEventHandler
from voicejournal.telephony.factory import get_telephony_provider
from voicejournal.telephony.interface import TelephonyProvider
from voicejournal.telephony.router import router as telephony_router

logger = get_logger(__name__)


@dataclass
class CallServices:
    """External services the live call engine depends on."""

    users: UserDirectory
    transcription: TranscriptionService
    synthesis: SpeechSynthesisService
    journal: JournalMaterializer
    prompts: PromptTemplateProvider = field(default_factory=DefaultPromptProvider)
    completeness: CompletenessChecker | None = field(default_factory=HeuristicCompletenessChecker)
    partial_policy: PartialSessionPolicy | None = None
    event_bus: EventBusProtocol | None = None


@dataclass
class CallEngine:
    orchestrator: LiveCallOrchestrator
    event_handler: TelephonyEventHandler
    scheduler: CallScheduler
    dispatcher: CallDispatcher


def build_call_engine(
    services: CallServices,
    db: DatabaseManager,
    telephony: TelephonyProvider,
    settings: Settings,
    telephony_cfg: TelephonyConfig,
) -> CallEngine:
    """Wire the orchestrator, status handler and background workers."""

    def retry_factory(session: AsyncSession) -> RetryScheduler:
        return RetryScheduler.from_settings(session, settings)

    orchestrator = LiveCallOrchestrator(
        db.session,
        telephony,
        services.users,
        services.prompts,
        services.transcription,
        services.synthesis,
        services.journal,
        from_number=telephony_cfg.twilio_from_number,
        status_callback_url=telephony_cfg.get_webhook_url(),
        completeness=services.completeness,
        partial_policy=services.partial_policy,
        publisher=LifecycleEventPublisher(services.event_bus or LoggingEventBus()),
        config=OrchestratorConfig.from_settings(settings),
        retry_factory=retry_factory,
    )
    return CallEngine(
        orchestrator=orchestrator,
        event_handler=TelephonyEventHandler(orchestrator, db.session, retry_factory),
        scheduler=CallScheduler(db.session, retry_factory, CallSchedulerConfig.from_settings(settings)),
        dispatcher=CallDispatcher(
            db.session,
            orchestrator,
            retry_factory,
            max_concurrent_calls=settings.max_concurrent_calls,
            interval_seconds=settings.dispatcher_interval_seconds,
        ),
    )


async def _stale_call_sweeper(orchestrator: LiveCallOrchestrator, interval_seconds: float) -> None:
    while True:
        try:
            swept = await orchestrator.sweep_stale()
            if swept:
                logger.info("Stale calls swept", extra={"count": swept})
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stale call sweep failed")
        await asyncio.sleep(interval_seconds)


def create_app(
    services: CallServices | None = None,
    db: DatabaseManager | None = None,
    telephony: TelephonyProvider | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    db_manager = db or get_database_manager()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging()
        logger.info("Application starting", extra={"env": settings.app_env})

        app.state.db = db_manager
        app.state.telephony = telephony or get_telephony_provider()
        app.state.orchestrator = None
        app.state.event_handler = None

        engine: CallEngine | None = None
        sweeper: asyncio.Task[None] | None = None
        if services is None:
            logger.warning("No call services configured; call engine disabled")
        else:
            engine = build_call_engine(services, db_manager, app.state.telephony, settings, get_telephony_config())
            app.state.orchestrator = engine.orchestrator
            app.state.event_handler = engine.event_handler

            if settings.scheduler_enabled:
                await engine.scheduler.start()
                await engine.dispatcher.start()
                sweeper = asyncio.create_task(
                    _stale_call_sweeper(engine.orchestrator, settings.scheduler_interval_seconds)
                )
                logger.info("Background workers started")

        yield

        logger.info("Shutting down application")
        if engine is not None:
            await engine.dispatcher.stop()
            await engine.scheduler.stop()
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await db_manager.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Voice Journal API",
        description="Scheduled reflection calls and their call lifecycle",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    if db is not None:

        async def _session() -> AsyncGenerator[AsyncSession, None]:
            async with db.session() as session:
                yield session

        app.dependency_overrides[get_db_session] = _session

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    app.include_router(ops_router)
    app.include_router(telephony_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
