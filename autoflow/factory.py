"""Application factory and component wiring."""

from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from .api.endpoints import router, init_dependencies
from .config import AppConfig, MessagingProvider, RetryMode, get_config, validate_config
from .core.error_recovery import BackoffRetryPolicy, NoRetryPolicy, RetryConfig, RetryPolicy
from .core.execution_engine import ExecutionEngine
from .core.logging import setup_logging, get_logger
from .core.node_executors import NodeExecutorRegistry, build_default_registry
from .core.reentry import ReentryController
from .core.scheduler import ResumptionScheduler
from .core.state_manager import StateManager
from .core.trigger_service import TriggerDispatcher, TriggerService
from .core.workflow_manager import WorkflowManager
from .core.workflow_scheduler import ScheduleManager, ScheduledWorkflowRunner
from .integrations.contacts import ContactDirectory, SqlContactDataService
from .integrations.notifications import LoggingNotifier
from .integrations.whatsapp import dry_run_channel_factory, whatsapp_channel_factory
from .models.core import WorkflowDefinition
from .storage.database import create_tables, get_database_engine


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.state_manager: Optional[StateManager] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.executors: Optional[NodeExecutorRegistry] = None
        self.retry_policy: Optional[RetryPolicy] = None
        self.contact_directory: Optional[ContactDirectory] = None
        self.trigger_service: Optional[TriggerService] = None
        self.dispatcher: Optional[TriggerDispatcher] = None
        self.schedule_manager: Optional[ScheduleManager] = None
        self.schedule_runner: Optional[ScheduledWorkflowRunner] = None
        self.scheduler: Optional[ResumptionScheduler] = None

    def engine_for(self, workflow: WorkflowDefinition) -> ExecutionEngine:
        """Build an execution engine for one workflow with the shared collaborators."""
        return ExecutionEngine(
            workflow,
            state_manager=self.state_manager,
            executors=self.executors,
            retry_policy=self.retry_policy,
            max_steps=self.config.max_steps_per_run if self.config else 1000,
        )


# Global application state
app_state = ApplicationState()


def build_retry_policy(config: AppConfig) -> RetryPolicy:
    if config.retry_mode == RetryMode.BACKOFF:
        return BackoffRetryPolicy(RetryConfig(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=False,
        ))
    return NoRetryPolicy()


def build_channel_factory(config: AppConfig) -> Callable:
    if config.messaging_provider == MessagingProvider.DRY_RUN:
        return dry_run_channel_factory()
    return whatsapp_channel_factory(base_url=config.whatsapp_api_url, timeout=config.whatsapp_timeout)


def initialize_core_components(
    config: AppConfig,
    session_factory: Optional[sessionmaker] = None,
    channel_factory: Optional[Callable] = None,
    notifier=None,
    rng=None,
    state: Optional[ApplicationState] = None,
) -> ApplicationState:
    """
    Wire the engine's components.

    Args:
        config: Application configuration
        session_factory: Database sessions; the global database is used when None
        channel_factory: Overrides the configured messaging provider
        notifier: Overrides the logging notifier
        rng: Random source for split nodes
        state: Container to populate; a new one is created when None

    Returns:
        The populated ApplicationState
    """
    state = state or ApplicationState()
    state.config = config
    state.state_manager = StateManager(session_factory)
    state.workflow_manager = WorkflowManager(session_factory)
    state.contact_directory = ContactDirectory(session_factory)
    state.retry_policy = build_retry_policy(config)
    state.executors = build_default_registry(
        channel_factory=channel_factory or build_channel_factory(config),
        contact_service=SqlContactDataService(session_factory),
        notifier=notifier or LoggingNotifier(),
        rng=rng,
    )
    state.trigger_service = TriggerService(
        state.workflow_manager,
        ReentryController(state.state_manager),
        max_workers=config.trigger_workers,
    )
    state.dispatcher = TriggerDispatcher(state.trigger_service, state.engine_for, state.contact_directory)
    state.schedule_manager = ScheduleManager(session_factory)
    state.schedule_runner = ScheduledWorkflowRunner(
        state.schedule_manager,
        state.workflow_manager,
        state.engine_for,
        state.contact_directory,
        reentry=ReentryController(state.state_manager),
        batch_size=config.scheduler_batch_size,
        max_contacts=config.schedule_max_contacts,
    )
    state.scheduler = ResumptionScheduler(
        state.state_manager,
        state.workflow_manager,
        state.engine_for,
        contact_directory=state.contact_directory,
        schedule_runner=state.schedule_runner,
        batch_size=config.scheduler_batch_size,
    )
    return state


def initialize_database(config: AppConfig, logger, session_factory: Optional[sessionmaker] = None) -> None:
    """Create tables and indexes."""
    try:
        if session_factory is not None:
            engine = session_factory.kw["bind"]
        else:
            engine = get_database_engine(config.database_url, echo=config.database_echo,
                                         connect_args=config.get_database_connect_args())
        create_tables(engine)
        logger.info("Database tables created")

        try:
            from .storage.migrations import run_migrations
            run_migrations(engine)
        except Exception as e:
            logger.warning(f"Database migrations failed: {str(e)}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def create_lifespan_handler(config: AppConfig, session_factory: Optional[sessionmaker] = None,
                            channel_factory: Optional[Callable] = None, notifier=None, rng=None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        initialize_database(config, logger, session_factory)
        initialize_core_components(config, session_factory, channel_factory, notifier, rng, state=app_state)
        init_dependencies(
            workflow_manager=app_state.workflow_manager,
            state_manager=app_state.state_manager,
            dispatcher=app_state.dispatcher,
            scheduler=app_state.scheduler,
            schedule_manager=app_state.schedule_manager,
            schedule_runner=app_state.schedule_runner,
        )

        if config.scheduler_enabled:
            app_state.scheduler.start(config.scheduler_interval)

        logger.info("Application startup completed successfully")

        yield

        logger.info(f"Shutting down {config.app_name}")
        try:
            app_state.scheduler.stop()
        except Exception as e:
            logger.error(f"Error stopping resumption scheduler: {str(e)}")

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    session_factory: Optional[sessionmaker] = None,
    channel_factory: Optional[Callable] = None,
    notifier=None,
    rng=None,
) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Event-triggered, node-based automation workflows for contacts",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, session_factory, channel_factory, notifier, rng)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    return app


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
