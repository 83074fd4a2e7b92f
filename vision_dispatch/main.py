import logging

from fastapi import FastAPI

from vision_dispatch.api.error_handlers import register_error_handlers
from vision_dispatch.api.health import router as health_router
from vision_dispatch.api.routes_analysis import router as analysis_router
from vision_dispatch.config import settings
from vision_dispatch.logging import configure_logging
from vision_dispatch.middleware.request_id import RequestIdMiddleware
from vision_dispatch.observability.metrics_route import router as metrics_router


def create_app() -> FastAPI:
    configure_logging()
    logger = logging.getLogger(__name__)

    app = FastAPI(title=settings.app_name)
    app.add_middleware(RequestIdMiddleware)
    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(analysis_router)

    logger.info("App initialized mode=%s", settings.inference_mode)
    return app


app = create_app()
