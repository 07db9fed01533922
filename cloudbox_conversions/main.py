import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.core.limiter import limiter
from cloudbox_conversions.api import endpoints
from cloudbox_conversions.db import init_db, close_db, unavailable_errors

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: schema must exist before the first enqueue
    try:
        init_db()
    except unavailable_errors() as e:
        # Keep serving; enqueue answers 503 until the database is reachable
        logger.error(f"DATABASE INIT FAILED: {e}")
    yield
    close_db()

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
if settings.DATABASE_URL and any("localhost" in o for o in _cors_origins):
    logger.warning(
        "CORS allows localhost origins while DATABASE_URL is set (production?). "
        "Set CORS_ORIGINS env var to restrict origins in production."
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(endpoints.router, prefix="/api")

@app.get("/health")
def health_check():
    return {"status": "healthy", "project": settings.PROJECT_NAME}
