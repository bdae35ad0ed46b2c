import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict

import psycopg2
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, load_settings
from .database import Database
from .schemas import AskRequest, AskResponse
from .services.cache import CacheStore, InMemoryCacheStore, PostgresCacheStore
from .services.embeddings import build_embedder
from .services.llm import ChatCompletionClient
from .services.router import AnswerRouter

logger = logging.getLogger(__name__)


# ============================================================
# SERVICE WIRING
# ============================================================

def build_store(app: FastAPI, settings: Settings) -> CacheStore | None:
    """
    Creates the cache store for CACHE_BACKEND.

    A database that cannot be reached leaves caching disabled; the error is
    kept on app.state.startup_error for /dbcheck.
    """
    if settings.CACHE_BACKEND == "none":
        return None
    if settings.CACHE_BACKEND == "memory":
        logger.info("Using in-memory cache store")
        return InMemoryCacheStore()

    if settings.DATABASE_URL_ERROR:
        app.state.startup_error = settings.DATABASE_URL_ERROR
        logger.error(f"Invalid database URL, caching disabled: {settings.DATABASE_URL_ERROR}")
        return None

    if not settings.DATABASE_URL:
        app.state.startup_error = "DATABASE_URL not found."
        logger.warning("DATABASE_URL not found, caching disabled")
        return None

    try:
        database = Database.connect(settings.DATABASE_URL)
        database.ensure_schema(settings.VECTOR_DIM)
    except (psycopg2.Error, ValueError) as e:
        app.state.startup_error = str(e)
        logger.error(f"Database startup failed, caching disabled: {e}")
        return None

    app.state.database = database
    logger.info("DB OK")
    return PostgresCacheStore(database)


# ============================================================
# FASTAPI APP INITIALIZATION
# ============================================================

def create_app(settings: Settings | None = None, router: AnswerRouter | None = None) -> FastAPI:
    """
    Builds the HTTP app.

    With a prebuilt router (tests) no database or provider is created.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.LOG_LEVEL)
        if app.state.router is None:
            store = await asyncio.to_thread(build_store, app, settings)
            embedder = build_embedder(settings)
            generator = ChatCompletionClient.from_settings(settings)
            app.state.router = AnswerRouter.from_settings(settings, generator, store=store, embedder=embedder)

            logger.info(
                f"Router ready: backend={settings.CACHE_BACKEND} cache={'on' if store else 'off'} "
                f"semantic={'on' if app.state.router.semantic_enabled else 'off'}"
            )

        yield

        await app.state.router.drain()
        if app.state.database is not None:
            app.state.database.close()

    app = FastAPI(title="Ask Cache API", lifespan=lifespan)
    app.state.settings = settings
    app.state.router = router
    app.state.database = None
    app.state.startup_error = None

    # CORS: allows browser frontend to call backend APIs
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # ============================================================
    # ENDPOINTS
    # ============================================================

    @app.get("/")
    def root():
        return {"status": "ok", "message": "API is running"}

    @app.get("/health")
    def health():
        """
        Very fast health check.
        """
        return {"status": "ok", "message": "Server is running"}

    @app.get("/health/detailed")
    async def health_detailed(request: Request):
        """
        Slower health check: database ping plus cache tier availability.
        """
        start = time.time()
        state = request.app.state

        if state.database is not None:
            try:
                await asyncio.to_thread(state.database.ping)
                db_status = "ok"
            except psycopg2.Error as e:
                db_status = f"error: {str(e)}"
        elif state.startup_error:
            db_status = f"error: {state.startup_error}"
        else:
            db_status = "not configured"

        router = state.router
        elapsed = time.time() - start

        return {
            "status": "degraded" if db_status.startswith("error") else "ok",
            "database": db_status,
            "cache_backend": settings.CACHE_BACKEND,
            "cache_enabled": bool(router and router.store is not None),
            "semantic_enabled": bool(router and router.semantic_enabled),
            "response_time_ms": round(elapsed * 1000, 2)
        }

    @app.get("/dbcheck")
    async def dbcheck(request: Request):
        state = request.app.state
        if state.startup_error:
            raise HTTPException(status_code=500, detail=state.startup_error)
        if state.database is None:
            return {"ok": True, "backend": settings.CACHE_BACKEND}

        try:
            await asyncio.to_thread(state.database.ping)
        except psycopg2.Error as e:
            raise HTTPException(status_code=500, detail=str(e)) from e
        return {"ok": True}

    @app.post("/ask", response_model=AskResponse)
    async def ask(req: AskRequest, request: Request):
        """
        Main endpoint:
        1) Validate question
        2) Exact / fuzzy / semantic cache lookup (skipped when time-sensitive)
        3) Ask the model on a miss
        4) Persist the new answer in the background
        """
        question = req.question or ""
        if not question.strip():
            raise HTTPException(status_code=400, detail="question required")

        router = request.app.state.router
        if router is None:
            raise HTTPException(status_code=503, detail="service is starting")

        result = await router.answer(question)
        return AskResponse(**asdict(result))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.PORT)
