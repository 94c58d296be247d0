import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.routers import payments_router, tracks_router, modules_router, usage_router
from app.core.config import get_settings
from app.core.database import init_db
from app.core.limiter import limiter
from app.services.errors import BillingError

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Payment reconciliation, track subscriptions and content access gating.",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting via @limiter.limit() decorators on each endpoint
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    # Internal taxonomy stays in the logs; clients get the generic message
    logger.info(
        "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message, "retryable": exc.retryable},
    )


# CORS configuration
origins = settings.CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments_router)
app.include_router(tracks_router)
app.include_router(modules_router)
app.include_router(usage_router)


@app.get("/")
@limiter.limit("5/minute")
def read_root(request: Request):
    return {"message": f"{settings.APP_NAME} is running."}


@app.get("/health")
def health():
    return {"status": "ok"}
