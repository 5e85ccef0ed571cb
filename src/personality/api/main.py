from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import get_settings
from ..infrastructure.events import shutdown_publisher
from ..observability.metrics import metrics_middleware_factory
from ..services.supervisor import shutdown_supervisor
from .routers.analysis import router as analysis_router

load_dotenv()  # Load WORDWARE_API_KEY, prompt ids, store settings from .env if present

logger = logging.getLogger("personality")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    logger.info(
        "api_startup store=%s timeout=%ss cooldown=%ss",
        settings.user_store_impl,
        settings.run_timeout_seconds,
        settings.admission_cooldown_seconds,
    )
    yield
    await shutdown_supervisor()
    await shutdown_publisher()


app = FastAPI(title="Twitter Personality Analysis API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(analysis_router)
app.include_router(analysis_router, prefix="/api")


@app.get("/")
def root():
    return {"name": "Twitter Personality Analysis API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": get_settings().user_store_impl,
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
