from fastapi import FastAPI
from sqlalchemy import text

from . import models  # noqa: F401  registers tables on Base.metadata
from .api import public_router, register_error_handlers, router, webhook_router
from .config import settings
from .db import Base, SessionLocal, engine
from .logging_config import setup_logging
from .middleware import RequestTracingMiddleware, SecurityHeadersMiddleware

setup_logging()

if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="NotifyWise",
    description="Appointment booking with WhatsApp confirmations and reminders",
    version="0.1.0",
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestTracingMiddleware)
register_error_handlers(app)


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    checks = {"db": "ok"}
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:
        checks["db"] = f"error: {exc}"
    ok = checks["db"] == "ok"
    return {"status": "ok" if ok else "degraded", "checks": checks}


app.include_router(router)
app.include_router(public_router)
app.include_router(webhook_router)
