from fastapi import FastAPI

from backend.app.api.v1.router import router as v1_router
from backend.app.core.errors import setup_exception_handlers
from backend.app.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Vikash Steel Dispatch", version="0.1.0")
    setup_exception_handlers(app)
    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
