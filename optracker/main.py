from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from optracker.config import Settings, settings as default_settings
from optracker.middleware import add_error_handling_middleware
from optracker.routes import health, info, operations, websocket
from optracker.services.cancellation import CancellationRegistry
from optracker.services.demo_tasks import DEMO_SLEEP_KIND, demo_sleep
from optracker.services.lifecycle import OperationLifecycleManager
from optracker.services.operations_service import OperationsService
from optracker.services.retention import RetentionSweeper
from optracker.services.runner import OperationRunner
from optracker.services.store import BaseOperationStore, create_operation_store

# Configure logging
logging.basicConfig(level=getattr(logging, default_settings.log_level.upper()))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    # Workers of a previous process are gone; an injected store may still have live ones
    if state.owns_store:
        state.manager.fail_orphaned(reason="server_restart")
    await state.runner.start()
    await state.sweeper.start()
    try:
        yield
    finally:
        await state.sweeper.stop()
        await state.runner.stop()
        if state.owns_store:
            state.store.close()


def create_app(settings: Optional[Settings] = None, store: Optional[BaseOperationStore] = None) -> FastAPI:
    """Build the application with its own store, lifecycle manager and runner."""
    settings = settings or default_settings

    app = FastAPI(
        title=settings.app_name,
        description="Tracker for long-running operations",
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add error handling middleware
    add_error_handling_middleware(app)

    owns_store = store is None
    if store is None:
        store = create_operation_store(settings)

    cancellation = CancellationRegistry()
    connections = websocket.ConnectionManager()
    manager = OperationLifecycleManager(store, cancellation=cancellation, listeners=[connections.notify])
    runner = OperationRunner(
        manager,
        cancellation,
        concurrency=settings.runner_concurrency,
        queue_size=settings.runner_queue_size,
    )
    runner.register(DEMO_SLEEP_KIND, demo_sleep)

    app.state.settings = settings
    app.state.store = store
    app.state.owns_store = owns_store
    app.state.cancellation = cancellation
    app.state.connections = connections
    app.state.manager = manager
    app.state.runner = runner
    app.state.operations_service = OperationsService(manager, store, runner)
    app.state.sweeper = RetentionSweeper(
        store,
        settings.retention_seconds,
        interval_seconds=settings.retention_sweep_interval_seconds,
    )

    # Include routers
    app.include_router(health.router, prefix=settings.api_v1_prefix)
    app.include_router(info.router, prefix=settings.api_v1_prefix)
    app.include_router(operations.router, prefix=settings.api_v1_prefix)
    app.include_router(websocket.router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {"message": settings.app_name, "version": settings.app_version}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
