from datetime import datetime, timezone

from fastapi import FastAPI

from app import models  # noqa: F401  registers tables on Base.metadata
from app.config import get_settings
from app.database import Base, engine
from app.dependencies import build_services
from app.errors import register_error_handlers
from app.logging_config import setup_logging
from app.routes import router
from app.webhooks import router as webhook_router

setup_logging()
settings = get_settings()

app = FastAPI(title="CrystalEnergy Payment Service")

register_error_handlers(app)
app.state.services = build_services(settings)

app.include_router(router)
app.include_router(webhook_router)

Base.metadata.create_all(bind=engine)


@app.get("/health")
def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.app_env,
    }


@app.get("/api")
def index():
    return {
        "message": "CrystalEnergy API",
        "endpoints": {
            "payments": "/api/payments",
            "consultations": "/api/consultations",
            "webhooks": "/api/webhooks",
            "admin": "/api/admin/payment-logs",
        },
    }
