"""Main application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
import redis
import httpx
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from config import (
    API_VERSION,
    IDP_AUDIENCE,
    IDP_ISSUER,
    IDP_JWKS_URL,
    JWT_ALGORITHM,
    JWT_SECRET,
    PORT,
    RATE_LIMIT_PER_MINUTE_IP,
    RATE_LIMIT_PER_MINUTE_USER,
    REDIS_URL,
    TOKEN_TTL_MINUTES,
    validate_config
)
from database import init_db, engine
from errors import MarketplaceError
from monitoring import init_profiling
from logging_config import setup_logging
from routers import cart, messages, orders, products, sales, users
from redis_rate_limiter import RedisRateLimiter
from services.identity_provider import IdentityProvider

# Setup structured logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. Clients already present on
    ``app.state`` are kept.
    """
    # Startup
    logger.info("Starting application...")

    missing = validate_config()
    if missing:
        logger.error("Missing required configuration", extra={"settings": missing})
        raise SystemExit(1)

    # Initialize database
    init_db()

    # Instrument and attach Redis client
    owns_redis = getattr(app.state, "redis_client", None) is None
    if owns_redis:
        redis_client = redis.from_url(REDIS_URL, decode_responses=True)
        RedisInstrumentor().instrument(redis_client=redis_client)
        app.state.redis_client = redis_client
        logger.info("Redis client initialized")

    # Initialize HTTP client
    owns_http_client = getattr(app.state, "http_client", None) is None
    if owns_http_client:
        http_client = httpx.AsyncClient(timeout=30.0)
        HTTPXClientInstrumentor().instrument_client(http_client)
        app.state.http_client = http_client
        logger.info("HTTP client initialized")

    if getattr(app.state, "identity_provider", None) is None:
        app.state.identity_provider = IdentityProvider(
            secret=JWT_SECRET,
            algorithm=JWT_ALGORITHM,
            token_ttl_minutes=TOKEN_TTL_MINUTES,
            jwks_url=IDP_JWKS_URL or None,
            audience=IDP_AUDIENCE,
            issuer=IDP_ISSUER
        )

    # Initialize profiling
    init_profiling()

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    if owns_http_client:
        await app.state.http_client.aclose()
        app.state.http_client = None
    if owns_redis:
        app.state.redis_client.close()
        app.state.redis_client = None
    logger.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Marketplace Service",
    version=API_VERSION,
    lifespan=lifespan
)

# Redis-backed dual-tier rate limiting
app.add_middleware(
    RedisRateLimiter,
    requests_per_minute_ip=RATE_LIMIT_PER_MINUTE_IP,
    requests_per_minute_user=RATE_LIMIT_PER_MINUTE_USER
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument FastAPI and SQLAlchemy
FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.http_status >= 500:
        logger.error("Request failed", extra={
            "path": request.url.path,
            "code": exc.code,
            "error": exc.message
        })
    else:
        logger.info("Request rejected", extra={
            "path": request.url.path,
            "code": exc.code,
            "status": exc.http_status
        })
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(
        status_code=400,
        content={"detail": "; ".join(problems) or "Invalid request", "code": "validation_error"}
    )


@app.exception_handler(SQLAlchemyError)
@app.exception_handler(redis.RedisError)
async def store_error_handler(request: Request, exc: Exception):
    logger.error("Store error", extra={
        "path": request.url.path,
        "error_type": type(exc).__name__,
        "error": str(exc)
    })
    return JSONResponse(status_code=500, content={"detail": "Database error", "code": "database_error"})


# Health check endpoint
@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}

# Include routers
app.include_router(users.router)
app.include_router(products.router)
app.include_router(messages.router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(sales.router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
