# reviewflow/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reviewflow.config import settings, setup_logging
from reviewflow.db import Base, engine

# registra todas las tablas en Base.metadata
import reviewflow.models  # noqa: F401
import reviewflow.telemetry  # noqa: F401
import reviewflow.review_requests.models  # noqa: F401

from reviewflow.channels.sms_router import router as sms_router
from reviewflow.review_requests.router import router as review_requests_router
from reviewflow.review_requests.tracking import router as tracking_router
from reviewflow.templates.router import router as templates_router
from reviewflow.triggers.router import router as triggers_router

logger = logging.getLogger(__name__)


def parse_origins(s: str) -> list[str]:
    """'a,b,c' -> lista de orígenes sin barra final."""
    out = []
    for part in (s or "").split(","):
        o = part.strip().rstrip("/")
        if o:
            out.append(o)
    return out


def create_app() -> FastAPI:
    app = FastAPI(title="ReviewFlow", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=parse_origins(settings.FRONTEND_ORIGIN) or ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(triggers_router)
    app.include_router(templates_router)
    app.include_router(review_requests_router)
    app.include_router(tracking_router)
    app.include_router(sms_router)

    @app.on_event("startup")
    def on_startup():
        setup_logging()
        Base.metadata.create_all(bind=engine)
        logger.info("[startup] tables ready")

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
