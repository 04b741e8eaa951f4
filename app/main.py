"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.database import engine, Base, SessionLocal
from app.api.dependencies import get_context
from app.api.routes import router
# Import models to register them with SQLAlchemy Base
from app.models.domain import Driver, Load, Mission, BillOfLading, Deposit, ShipperReputation  # noqa: F401
from app.models.audit import BolEvent  # noqa: F401
from app.services.reconciler import MaintenanceReconciler, Scheduler, run_reconcile

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    ctx = get_context()
    settings = ctx.mission_settings

    # Start-up pass: rebuild the mission index, then clear anything that went
    # stale while the service was down
    db = SessionLocal()
    try:
        MaintenanceReconciler(db, ctx).run_all(rehydrate=True)
    finally:
        db.close()

    scheduler = Scheduler()
    scheduler.every(settings.RECONCILE_INTERVAL_SECONDS, "reconcile", partial(run_reconcile, SessionLocal, ctx, True))
    scheduler.every(settings.RECONCILE_FAST_INTERVAL_SECONDS, "reconcile-fast", partial(run_reconcile, SessionLocal, ctx, False))
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("freight mission service started")

    yield

    await scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Freight Mission Core",
    description="Reservations, live missions, payouts and the BOL ledger for freight hauling.",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For MVP - restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api", tags=["Freight"])


# Health check
@app.get("/health")
def health_check():
    ctx = get_context()
    return {"status": "healthy", "service": "Freight Mission Core", "live_missions": len(ctx.index)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
