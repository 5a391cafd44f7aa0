from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
import structlog

from shared.config.database import AsyncSessionLocal, Base, DB_SCHEMA, engine
from shared.observability import setup_observability
from shared.security import limiter

# IMPORTANT: import models so they register with Base
from services.order_service import models as order_models  # noqa: F401

from services.order_service.exceptions import OrderServiceError
from services.order_service.router import callback_router, order_error_handler, public_router, router as order_router
from services.order_service.service import OrderService, sla_supervisor
from services.realtime_service.router import router as realtime_router

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Campus Orders",
    version="1.0.0",
    description="Order lifecycle, restaurant acknowledgement SLA and live order updates.",
)

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(app, "order_service")

# --- SECURITY SETUP ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(OrderServiceError, order_error_handler)

app.include_router(public_router)
app.include_router(order_router)
app.include_router(callback_router)
app.include_router(realtime_router)


async def init_models():
    async with engine.begin() as conn:
        if DB_SCHEMA:
            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def startup_event():
    await init_models()
    # Timers are in-memory only; orders still pending get their deadline back from created_at
    async with AsyncSessionLocal() as db:
        await OrderService.rearm_pending_timers(db)
    logger.info("order_service_started")


@app.on_event("shutdown")
async def shutdown_event():
    await sla_supervisor.shutdown()
    await engine.dispose()
