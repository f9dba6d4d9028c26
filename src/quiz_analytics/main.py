"""Quiz analytics FastAPI application entry point.

Run with any ASGI server, e.g. ``uvicorn src.quiz_analytics.main:app``.
"""
import logging
import os

from fastapi import FastAPI

from .api.routes import router as api_router


logging.basicConfig(
    level=os.getenv("QUIZ_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Quiz Analytics API",
        version="0.1.0",
        description="Order-to-quiz-session attribution sync and quiz reports",
    )
    app.include_router(api_router)

    @app.get("/health", tags=["ops"])
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
