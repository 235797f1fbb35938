"""Application factory for creating FastAPI instances."""

from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.error_recovery import health_checker
from .core.execution_store import ExecutionStore
from .core.http_client import ActionHttpClient
from .core.session_manager import SessionManager
from .storage.database import create_tables, get_database_engine, get_session_factory, reset_database_engine
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.execution_store: Optional[ExecutionStore] = None
        self.session_manager: Optional[SessionManager] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the engine to the configured database and create tables."""
    try:
        reset_database_engine()
        get_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables()
        logger.info("Database tables created")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(config: AppConfig, logger) -> tuple:
    """Create the execution store and the session manager."""
    execution_store = ExecutionStore(
        session_factory=get_session_factory(),
        max_executions_per_workflow=config.max_executions_per_workflow
    )
    session_manager = SessionManager(
        execution_store=execution_store,
        http_client=ActionHttpClient(timeout=config.http_timeout),
        max_steps_per_run=config.max_steps_per_run,
        max_sessions=config.max_sessions,
        session_idle_timeout=config.session_idle_timeout
    )
    logger.info("Core components initialized")
    return execution_store, session_manager


def setup_health_checks(session_manager: SessionManager, logger) -> None:
    """Set up health check functions."""

    def check_database():
        db = get_session_factory()()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"message": "Database connection successful"}

    def check_sessions():
        return {
            "message": "Session manager operational",
            "sessions": len(session_manager.list_sessions()),
            "active_runs": session_manager.active_count()
        }

    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("sessions", check_sessions, timeout=2.0)
    logger.info("Health checks registered")


def create_lifespan_handler(config: AppConfig):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        initialize_database(config, logger)
        execution_store, session_manager = initialize_core_components(config, logger)

        app_state.config = config
        app_state.execution_store = execution_store
        app_state.session_manager = session_manager
        app_state.logger = logger

        init_dependencies(session_manager=session_manager, execution_store=execution_store)
        setup_health_checks(session_manager, logger)

        logger.info("Application startup completed successfully")

        yield

        logger.info(f"Shutting down {config.app_name}")
        for session in session_manager.list_sessions():
            session.call(lambda runner: runner.stop())
        session_manager.http_client.close()

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Interactive test runs of visually composed workflow graphs",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware

    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_request_logging:
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
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

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
