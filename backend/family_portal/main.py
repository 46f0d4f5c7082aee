from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from family_portal.core.config import settings
from family_portal.core.errors import AppError, app_error_handler
from family_portal.core.logging import setup_logging, get_logger
from family_portal.core.rate_limit import limiter, rate_limit_exceeded_handler
from family_portal.routers import health, membership, subscriptions, webhooks_stripe
from family_portal.routers import children, notifications

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(debug=settings.DEBUG)
    logger.info("Application startup")
    yield
    logger.info("Application shutdown")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Domain errors -> {"code", "detail"}
app.add_exception_handler(AppError, app_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(membership.router)
app.include_router(subscriptions.router)
app.include_router(webhooks_stripe.router)
app.include_router(children.router)
app.include_router(notifications.router)
