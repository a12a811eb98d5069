from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import BaseModel
from sqlalchemy import text

from analysis_jobs.api.analyses import router as analyses_router
from analysis_jobs.core.config import load_settings
from analysis_jobs.resources import Resources
from analysis_jobs.services.job_dispatch import dispatch_analysis


def _open_resources() -> Resources:
    return Resources.open(load_settings(), dispatch=dispatch_analysis)


class HealthResponse(BaseModel):
    ok: bool
    service: str
    version: str
    db_ok: bool


def create_app(resources: Resources | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.resources is None
        if owned:
            app.state.resources = _open_resources()
        try:
            yield
        finally:
            if owned:
                app.state.resources.close()
                app.state.resources = None

    app = FastAPI(title="Analysis Jobs API", version="0.1.0", lifespan=lifespan)
    app.state.resources = resources
    app.include_router(analyses_router)

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        # lightweight DB check
        db_ok = False
        res = app.state.resources
        if res is not None:
            try:
                with res.session_factory() as db:
                    db.execute(text("SELECT 1"))
                db_ok = True
            except Exception:
                db_ok = False
        return HealthResponse(ok=True, service="api", version=app.version, db_ok=db_ok)

    return app


app = create_app()
