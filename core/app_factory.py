"""
FastAPI application factory.

Assembles the Graph RAG API: environment, logging, CORS, request ids, error
handlers, routers and the startup hook that connects Supabase and warms the
Gemini clients (both skipped in fake/test mode).
"""

# Standard library
import logging
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

# Third-party
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

# Local application
from core.errors import register_error_handlers

logger = logging.getLogger(__name__)

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def fake_mode() -> bool:
    """TEST_MODE or USE_FAKE_PROVIDERS: no Supabase, no Gemini."""
    return _env_flag("TEST_MODE") or _env_flag("USE_FAKE_PROVIDERS")


def _load_config() -> None:
    """Read config.env from the project root and set up logging."""
    root = os.path.dirname(os.path.dirname(__file__))
    load_dotenv(dotenv_path=os.path.join(root, "config.env"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for key in ("GOOGLE_API_KEY", "SUPABASE_URL", "SUPABASE_KEY"):
        logger.info("%s: %s", key, "Loaded" if os.getenv(key) else "Not Found")
    logger.info("Fake providers: %s", fake_mode())
    logger.info("Entity extraction enabled: %s", _env_flag("ENABLE_ENTITY_EXTRACTION", "true"))


def _cors_origins() -> list[str]:
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    if configured:
        logger.info("CORS origins from env: %s", configured)
        return configured
    logger.info("CORS: development origins (set CORS_ORIGINS for production)")
    return list(_DEV_ORIGINS)


async def _attach_request_id(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


def _connect_supabase(app: FastAPI) -> None:
    """Create the Supabase client used by the graph store and auth."""
    if fake_mode():
        app.state.supabase = None
        logger.info("Fake mode: using the in-memory graph store")
        return

    from supabase_client import init_supabase

    app.state.supabase = init_supabase()
    if app.state.supabase is None:
        logger.warning("Supabase unavailable; retrieval will return empty results")


async def _initialize_rag_components() -> None:
    """Build the cached extraction/QA chat models and the embedding client."""
    if fake_mode():
        logger.info("Fake mode: skipping model warmup")
        return

    from core.llm_factory import get_embeddings_model, get_llm

    try:
        get_llm("entity_extraction")
        get_llm("rag_qa")
        get_embeddings_model()
        logger.info("Gemini clients ready")
    except Exception as exc:  # noqa: BLE001
        logger.error("Model warmup failed (non-fatal): %s", exc)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("=== Graph RAG API starting ===")
    _connect_supabase(app)
    await _initialize_rag_components()
    yield
    logger.info("=== Graph RAG API stopped ===")


async def read_root() -> dict[str, str]:
    """Health check endpoint."""
    return {"message": "Graph RAG API is running."}


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    _load_config()

    app = FastAPI(
        title="Graph RAG API",
        description="Knowledge-graph extraction and multi-mode retrieval over user documents",
        version="1.0.0",
        lifespan=app_lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],  # Authorization carries the Supabase JWT
    )
    app.middleware("http")(_attach_request_id)
    register_error_handlers(app)

    from knowledge_graph.router import router as graph_router
    from rag.router import router as rag_router

    app.include_router(rag_router, prefix="/rag", tags=["RAG Question Answering"])
    app.include_router(graph_router, prefix="/graph", tags=["Knowledge Graph"])
    app.add_api_route("/", read_root, methods=["GET"])
    return app
