import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.db import Base, engine
from .core.responses import install_exception_handlers
from . import models  # noqa: F401  (registers tables on Base.metadata)
from .admin_bookings import router as admin_bookings_router
from .customer_bookings import router as customer_bookings_router
from .provider_bookings import router as provider_bookings_router
from .public_booking import router as public_booking_router
from .rate_limiter import RateLimitHeadersMiddleware
from .time_blocks import router as time_blocks_router


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")
    yield
    await engine.dispose()


app = FastAPI(title="Service Marketplace Booking API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimitHeadersMiddleware)

install_exception_handlers(app)

app.include_router(provider_bookings_router)
app.include_router(time_blocks_router)
app.include_router(customer_bookings_router)
app.include_router(public_booking_router)
app.include_router(admin_bookings_router)


@app.get("/health")
async def healthcheck():
    return {"ok": True}
