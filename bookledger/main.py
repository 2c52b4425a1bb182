import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bookledger import config, models
from bookledger.database import SessionLocal, engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables
    models.Base.metadata.create_all(bind=engine)
    # Seed demo data if asked to and the database is empty
    if config.SEED_DEMO_DATA:
        db = SessionLocal()
        try:
            count = db.query(models.Tenant).count()
            if count == 0:
                import subprocess
                import sys
                logger.info("🌱 Seeding demo data")
                subprocess.run([sys.executable, "scripts/generate_test_data.py"], check=False)
        finally:
            db.close()
    yield


app = FastAPI(
    title="Bookledger Payment & Ledger API",
    description="Takes appointment payments through PayTR, keeps the ledger exactly-once and reconciles the gaps",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "bookledger"}


from bookledger.routers import appointments, identity, payments, reconcile  # noqa: E402
app.include_router(payments.router, prefix="/api/v1/payments", tags=["payments"])
app.include_router(appointments.router, prefix="/api/v1/appointments", tags=["appointments"])
app.include_router(reconcile.router, prefix="/api/v1/reconcile", tags=["reconcile"])
app.include_router(identity.router, prefix="/api/v1/identity", tags=["identity"])
