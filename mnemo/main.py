"""
Mnemo API - Main Application
Personal knowledge cache + event graph retrieval over HTTP.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file into environment variables

import time
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import settings
from mnemo import __version__
from mnemo.api.knowledge_routes import router as knowledge_router
from mnemo.core.context import KnowledgeContext
from mnemo.core.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(context: Optional[KnowledgeContext] = None) -> FastAPI:
    """Build the app; a prebuilt context (tests) skips start-up construction."""
    app = FastAPI(
        title="Mnemo Personal Knowledge API",
        description="Categorized personal-knowledge cache, focus tracking and event clustering",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.knowledge = context

    @app.on_event("startup")
    def _startup():
        """Initialize logging and the knowledge context."""
        setup_logging()
        if app.state.knowledge is not None:
            return
        startup_start = time.perf_counter()
        app.state.knowledge = KnowledgeContext.build()
        logger.info("[STARTUP] Knowledge context ready (db=%s) in %.2fs",
                    settings.sqlite_path, time.perf_counter() - startup_start)

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.knowledge is not None:
            app.state.knowledge.jobs.shutdown(wait=False)

    @app.get("/health")
    def health():
        ctx = app.state.knowledge
        return {
            "status": "ok" if ctx is not None else "starting",
            "version": __version__,
            "graph": ctx.store.stats() if ctx is not None else None,
        }

    app.include_router(knowledge_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mnemo.main:app", host=settings.api_host, port=settings.api_port)
