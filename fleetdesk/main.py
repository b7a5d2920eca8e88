import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleetdesk.core.config import settings
from fleetdesk.core.errors import register_error_handlers
from fleetdesk.core.logging import setup_logging, get_logger
from fleetdesk.api import rfqs, offers, approvals, admin, automation, notifications, audit

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    from fleetdesk.db.session import init_db
    init_db()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")
    yield


def create_app(run_startup: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan if run_startup else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    for module in (rfqs, offers, approvals, admin, automation, notifications, audit):
        app.include_router(module.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": settings.APP_NAME, "version": settings.APP_VERSION}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
