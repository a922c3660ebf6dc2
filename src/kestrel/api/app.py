from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kestrel.api.routes import router as api_router
from kestrel.config import get_settings
from kestrel.core.runtime import get_learning_queue
from kestrel.db.init import init_database
from kestrel.logging_config import configure_logging


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        configure_logging()
        init_database()
        if settings.learning_queue_enabled:
            get_learning_queue().start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        get_learning_queue().stop(timeout=settings.orchestrator_join_timeout_sec)

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(api_router)
    return app
