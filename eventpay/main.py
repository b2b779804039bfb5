import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from eventpay.config import get_settings
from eventpay.database import init_db
from eventpay.errors import PaymentsError
from eventpay.middleware.security import setup_security_middleware
from eventpay.routers import admin_router, events_router, refunds_router, webhooks_router
from eventpay.routers.refunds import limiter
from eventpay.services.scheduler import init_scheduler, shutdown_scheduler

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    init_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(
    title="Eventpay",
    description="Stripe webhook fulfillment and refunds for event tickets",
    version="1.0.0",
    lifespan=lifespan
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

setup_security_middleware(app, allowed_hosts=settings.allowed_hosts)

app.include_router(webhooks_router)
app.include_router(refunds_router)
app.include_router(events_router)
app.include_router(admin_router)


@app.exception_handler(PaymentsError)
async def payments_error_handler(request: Request, exc: PaymentsError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health():
    return {"status": "ok"}
