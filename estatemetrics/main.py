"""FastAPI entry point. Serve with `uvicorn estatemetrics.main:app` (install the `serve` extra)."""
from typing import Optional

from fastapi import FastAPI

from . import config
from .api.routes import router as api_router
from .db import StorageConnection
from .export import ReportingExporter
from .process import DockerContainer
from .region import RegionPipeline
from .scheduler import RegionScheduler
from .store import DocumentStore
from .utils import logger


def build_pipeline(connection: Optional[StorageConnection] = None) -> RegionPipeline:
    """Wire connection -> store -> pipeline using the environment settings."""
    if connection is None:
        process = DockerContainer() if config.STORE_CONTAINER else None
        connection = StorageConnection(process=process)
    store = DocumentStore(connection)
    exporter = ReportingExporter(store) if config.EXPORT_FLAT_TABLES else None
    return RegionPipeline(store, export=exporter)


def create_app(
    pipeline: Optional[RegionPipeline] = None,
    scheduler: Optional[RegionScheduler] = None,
    enable_scheduler: bool = config.ENABLE_SCHEDULER,
) -> FastAPI:
    pipeline = pipeline or build_pipeline()
    app = FastAPI(title="estatemetrics")
    app.state.pipeline = pipeline
    app.state.store = pipeline.store
    app.state.connection = pipeline.store.connection
    app.state.scheduler = scheduler or RegionScheduler(pipeline)
    app.include_router(api_router)

    @app.on_event("startup")
    def start_scheduler():
        if enable_scheduler:
            app.state.scheduler.start()
        else:
            logger.info("Scheduler disabled")

    @app.on_event("shutdown")
    def stop_scheduler():
        app.state.scheduler.shutdown(wait=False)
        app.state.connection.close()

    return app


app = create_app()
