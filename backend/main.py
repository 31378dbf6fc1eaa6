import logging

from fastapi import FastAPI

from config import settings
from db.database import engine, Base
from db import models  # noqa: F401  (registers tables on Base.metadata)
from api.jobs import router as jobs_router

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

settings.validate_runtime_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# Routers
app.include_router(jobs_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}
