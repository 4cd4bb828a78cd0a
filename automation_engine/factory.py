"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.audit import AuditRecorder
from .core.enrollment_store import EnrollmentStore
from .core.error_recovery import health_checker
from .core.event_router import EventRouter
from .core.execution_engine import ExecutionEngine
from .core.logging import setup_logging, get_logger
from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware, PerformanceMonitoringMiddleware
from .core.scheduler import ExecutionScheduler
from .core.validation import ValidationEngine
from .core.workflow_manager import WorkflowManager
from .integrations.base import AIProvider, ContactStore, MessagingGateway
from .integrations.memory import InMemoryContactStore, RecordingMessagingGateway
from .storage.database import create_tables, get_db, init_database
from .storage.migrations import run_migrations
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.enrollment_store: Optional[EnrollmentStore] = None
        self.audit_recorder: Optional[AuditRecorder] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.scheduler: Optional[ExecutionScheduler] = None
        self.event_router: Optional[EventRouter] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the storage layer to the configured database and create its schema."""
    try:
        init_database(config.database_url, echo=config.database_echo)
        create_tables()
        logger.info("Database tables created")

        try:
            run_migrations()
        except Exception as e:
            logger.warning(f"Database migrations failed: {str(e)}")
            # Startup continues on a partially migrated database

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(
    config: AppConfig,
    contact_store: Optional[ContactStore] = None,
    messaging: Optional[MessagingGateway] = None,
    ai_provider: Optional[AIProvider] = None,
    clock: Optional[Callable[[], datetime]] = None,
    worker_id: Optional[str] = None
) -> ApplicationState:
    """
    Wire the engine components together.

    Collaborators that are not supplied fall back to the in-process
    implementations, which keep contacts in memory and record messages
    instead of delivering them.
    """
    logger = get_logger(__name__)

    if contact_store is None:
        logger.warning("No contact store configured, using the in-memory contact store")
        contact_store = InMemoryContactStore()
    if messaging is None:
        logger.warning("No messaging gateway configured, messages will be recorded but not delivered")
        messaging = RecordingMessagingGateway()
    if ai_provider is None:
        logger.info("No AI provider configured, AI nodes will fail with a configuration error")

    state = ApplicationState()
    state.config = config
    state.enrollment_store = EnrollmentStore(lease_seconds=config.lease_seconds, clock=clock)
    state.audit_recorder = AuditRecorder(clock=clock)
    state.workflow_manager = WorkflowManager(
        validation_engine=ValidationEngine(
            allowed_ai_models=config.ai_allowed_models,
            allowed_webhook_schemes=config.webhook_allowed_schemes,
            max_condition_depth=config.max_condition_depth
        ),
        enrollment_store=state.enrollment_store,
        audit_recorder=state.audit_recorder,
        clock=clock
    )
    state.execution_engine = ExecutionEngine(
        workflow_manager=state.workflow_manager,
        enrollment_store=state.enrollment_store,
        audit_recorder=state.audit_recorder,
        contact_store=contact_store,
        messaging=messaging,
        config=config,
        ai_provider=ai_provider,
        clock=clock
    )
    state.scheduler = ExecutionScheduler(
        enrollment_store=state.enrollment_store,
        engine=state.execution_engine,
        batch_size=config.scheduler_batch_size,
        max_workers=config.max_dispatch_workers,
        interval_seconds=config.scheduler_interval_seconds,
        worker_id=worker_id,
        clock=clock
    )
    state.event_router = EventRouter(
        workflow_manager=state.workflow_manager,
        enrollment_store=state.enrollment_store,
        stop_keywords=config.stop_keywords,
        clock=clock
    )

    logger.info("Core components initialized")
    return state


def setup_health_checks(state: ApplicationState, logger) -> None:
    """Set up health check functions."""
    health_checker.clear()

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
            return {"status": "healthy", "message": "Database connection successful"}
        finally:
            db.close()

    def check_scheduler():
        info = state.scheduler.health()
        last_sweep = info.get("last_sweep")
        if last_sweep and last_sweep.get("aborted"):
            raise RuntimeError(f"Last sweep aborted: {last_sweep.get('error')}")
        return {"message": "Scheduler operational", **info}

    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("scheduler", check_scheduler, timeout=2.0)

    logger.info("Health checks registered")


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name}")

    try:
        state.scheduler.shutdown()
        logger.info("Scheduler stopped")
    except Exception as e:
        logger.error(f"Error stopping scheduler: {str(e)}")

    try:
        state.execution_engine.shutdown()
        logger.info("Execution engine shutdown completed")
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")


def create_lifespan_handler(
    config: AppConfig,
    contact_store: Optional[ContactStore] = None,
    messaging: Optional[MessagingGateway] = None,
    ai_provider: Optional[AIProvider] = None,
    clock: Optional[Callable[[], datetime]] = None
):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)
            state = initialize_core_components(
                config,
                contact_store=contact_store,
                messaging=messaging,
                ai_provider=ai_provider,
                clock=clock
            )
            state.logger = logger

            # Expose components through the global state
            app_state.__dict__.update(state.__dict__)
            app.state.components = state

            init_dependencies(
                workflow_manager=state.workflow_manager,
                enrollment_store=state.enrollment_store,
                audit_recorder=state.audit_recorder,
                event_router=state.event_router,
                scheduler=state.scheduler
            )

            setup_health_checks(state, logger)

            if config.scheduler_enabled:
                state.scheduler.start()

            logger.info("Application startup completed successfully")

        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        # Shutdown
        try:
            graceful_shutdown(state, logger)
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    contact_store: Optional[ContactStore] = None,
    messaging: Optional[MessagingGateway] = None,
    ai_provider: Optional[AIProvider] = None,
    clock: Optional[Callable[[], datetime]] = None
) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    # Validate configuration
    validate_config(config)

    # Create FastAPI application
    app = FastAPI(
        title=config.app_name,
        description="Durable execution engine for contact automation workflows and drip campaigns",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, contact_store, messaging, ai_provider, clock)
    )

    # Add CORS middleware
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    # Add custom middleware
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlingMiddleware)

    # Include API router
    app.include_router(router)

    # Add health check endpoints
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        try:
            results = await health_checker.run_all_checks()
            status_code = 200 if results["overall_status"] == "healthy" else 503

            return JSONResponse(
                status_code=status_code,
                content={
                    "service": service_name,
                    "version": config.app_version,
                    **results
                }
            )
        except Exception as e:
            logger = get_logger(__name__)
            logger.error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
