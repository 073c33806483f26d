import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from pointledger import containers
from pointledger.config import get_settings
from pointledger.core.exception_handlers import register_exception_handlers
from pointledger.logging_config import setup_logging
from pointledger.routers import health_router, point_router

load_dotenv("pointledger/.env")

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)

    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
    app.container = containers.Container()  # type: ignore

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"Request: {request.method} {request.url}")
        response = await call_next(request)
        logger.info(f"Response: {response.status_code}")
        return response

    register_exception_handlers(app)

    app.include_router(health_router.router)
    app.include_router(point_router.router, prefix=settings.API_V1_STR)

    return app


app = create_app()

handler = Mangum(app)
