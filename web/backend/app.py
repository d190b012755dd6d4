import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.logger import get_logger
from web.backend.routers import goals, recurrence, tasks

logger = get_logger("api")


def create_app() -> FastAPI:
    app = FastAPI(title="Questline API", version="1.0")

    raw_origins = os.getenv("QUESTLINE_ALLOWED_ORIGINS", "*")
    allow_origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
    allow_credentials = "*" not in allow_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": "Questline"}

    app.include_router(goals.router, prefix="/api/v1/goals", tags=["goals"])
    app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["tasks"])
    app.include_router(
        recurrence.router, prefix="/api/v1/recurrence-rules", tags=["recurrence"]
    )

    logger.info("Questline API ready")
    return app


app = create_app()
