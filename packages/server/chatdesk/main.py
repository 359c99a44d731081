from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import redis.asyncio as redis
import os
from sqlalchemy import text

from chatdesk import __version__, dependencies
from chatdesk.config import EngineSettings
from chatdesk.errors import ChatdeskError
from chatdesk.logging_config import setup_logging, get_logger
from chatdesk.database import (
    build_engine,
    build_session_factory,
    close_db_engine,
    create_schema,
    init_db_engine,
    is_sqlite,
)
from chatdesk.routers import (
    agents,
    auto_reply,
    events,
    gateway,
    instances,
    queues,
    tenant,
    tickets,
)
from chatdesk.schemas import ErrorResponse
from chatdesk.services.auto_reply import DisabledGenerator, OpenAICompatibleGenerator
from chatdesk.services.feed import InMemoryChangeFeed, RedisChangeFeed
from chatdesk.services.gateway import HttpGatewayFactory

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine services; tear them down on shutdown."""
    settings = EngineSettings()
    setup_logging(settings.log_level)

    try:
        settings.validate()
    except RuntimeError as e:
        logger.critical(f"Configuration error: {e}")
        raise

    # Initialize async database engine
    engine = build_engine(settings.database_url)
    try:
        await init_db_engine(engine)
        if is_sqlite(settings.database_url):
            await create_schema(engine)
        logger.info("Database engine initialized")
    except Exception as e:
        logger.critical(f"Could not initialize database engine: {e}")
        raise

    if settings.change_feed_backend == "redis":
        # Initialize Redis with retry/reconnect settings
        dependencies.redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        try:
            await dependencies.redis_client.ping()
            logger.info(f"Connected to Redis at {settings.redis_url}")
        except Exception as e:
            logger.warning(f"Could not connect to Redis: {e}")
            logger.warning("Viewers will backfill from storage until the feed is back")
        feed = RedisChangeFeed(dependencies.redis_client)
    else:
        feed = InMemoryChangeFeed()
        logger.info("Using in-process change feed (single API process)")

    if settings.ai_base_url:
        generator = OpenAICompatibleGenerator(
            settings.ai_base_url,
            settings.ai_model,
            api_key=settings.ai_api_key,
            timeout=settings.auto_reply_timeout_seconds,
        )
        logger.info(f"Auto-reply generator: {settings.ai_model} at {settings.ai_base_url}")
    else:
        generator = DisabledGenerator()
        logger.warning("AI_BASE_URL not set; auto-replies are disabled")

    services = dependencies.build_services(
        settings,
        engine,
        build_session_factory(engine),
        feed,
        HttpGatewayFactory(timeout=settings.gateway_timeout_seconds),
        generator,
    )
    app.state.services = services

    yield

    # Cleanup
    await services.shutdown()
    if isinstance(generator, OpenAICompatibleGenerator):
        await generator.aclose()

    try:
        await close_db_engine(engine)
        logger.info("Database engine closed")
    except Exception as e:
        logger.error(f"Error closing database engine: {e}")

    if dependencies.redis_client:
        try:
            await dependencies.redis_client.aclose()
            logger.info("Disconnected from Redis")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
        dependencies.redis_client = None


app = FastAPI(
    title="chatdesk API",
    version=__version__,
    description="Conversation routing and realtime sync engine for chat CRM screens",
    lifespan=lifespan,
)

# CORS
# CORS_ORIGINS env var controls allowed origins.
#   "*" / unset          → wildcard (credentials disabled)
#   "http://a,https://b" → explicit origin list (credentials enabled)
_cors_origins_env = os.getenv("CORS_ORIGINS", "*").strip()
if _cors_origins_env == "*":
    _cors_origins = ["*"]
    _cors_credentials = False
else:
    _cors_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()]
    _cors_credentials = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatdeskError)
async def chatdesk_error_handler(request: Request, exc: ChatdeskError):
    """Domain errors carry their own status code."""
    error_type = type(exc).__name__
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {error_type}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.message, type=error_type).model_dump(),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions and return proper JSON response."""
    error_detail = str(exc)
    error_type = type(exc).__name__

    # Log the full traceback
    logger.error(
        f"Unhandled exception in {request.method} {request.url.path}: {error_type}: {error_detail}",
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": f"{error_type}: {error_detail}",
            "type": error_type,
            "path": str(request.url.path),
        },
    )


app.include_router(tenant.router, prefix="/v1/tenant", tags=["tenant"])
app.include_router(instances.router, prefix="/v1/instances", tags=["instances"])
app.include_router(gateway.router, prefix="/v1/gateway", tags=["gateway"])
app.include_router(tickets.router, prefix="/v1/tickets", tags=["tickets"])
app.include_router(queues.router, prefix="/v1/queues", tags=["queues"])
app.include_router(agents.router, prefix="/v1/agents", tags=["agents"])
app.include_router(auto_reply.router, prefix="/v1/auto-reply", tags=["auto-reply"])
app.include_router(events.router, prefix="/v1/events", tags=["events"])


@app.get("/v1/status")
async def status(services: dependencies.Services = Depends(dependencies.get_services)):
    """Get API health status."""
    database_ok = False
    try:
        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database_ok = True
    except Exception as e:
        logger.warning(f"Status check: database unavailable: {e}")

    redis_ok = None
    if dependencies.redis_client:
        try:
            redis_ok = bool(await dependencies.redis_client.ping())
        except Exception:
            redis_ok = False

    return {
        "status": "ok" if database_ok and redis_ok is not False else "degraded",
        "version": __version__,
        "database": database_ok,
        "redis": redis_ok,
        "changeFeed": services.settings.change_feed_backend,
    }
