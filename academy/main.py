import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .logging_config import configure_logging
from .routes import router
from .services import AcademyServices, create_services
from .sync import SyncTrigger

logger = logging.getLogger(__name__)


def create_app(services_factory: Optional[Callable[[], AcademyServices]] = None) -> FastAPI:
    factory = services_factory or create_services

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = factory()
        app.state.services = services
        logger.info("Sales academy backend starting (airtable configured: %s)", services.client.is_configured())
        await services.orchestrator.sync(SyncTrigger.STARTUP)
        services.orchestrator.start()
        try:
            yield
        finally:
            await services.aclose()
            logger.info("Sales academy backend stopped")

    application = FastAPI(title="Sales Academy Backend", version="0.1.0", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(router)
    return application


configure_logging()
app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("academy.main:app", host="127.0.0.1", port=8000)
