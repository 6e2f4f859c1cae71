"""FastAPI entry point: staff API, customer link API and health probe."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.config import get_settings
from veriflow.app.errors import STATUS_BY_CODE
from veriflow.app.routes.auth import router as auth_router
from veriflow.app.routes.policies import router as policies_router
from veriflow.app.routes.team import router as team_router
from veriflow.app.routes.verifications import router as verifications_router
from veriflow.app.routes.verify import router as verify_router
from veriflow.domain.errors import VerificationError
from veriflow.domain.schemas import HealthResponse
from veriflow.infra.database import get_db, init_db

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(
        "VeriFlow API started (gps tolerance %.0fm, default SLA %dh)",
        settings.gps_tolerance_meters, settings.default_sla_hours,
    )
    yield


app = FastAPI(title="VeriFlow API", lifespan=lifespan, debug=settings.debug)

# Customers open links from phones on the LAN while developing
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(policies_router)
app.include_router(team_router)
app.include_router(verifications_router)
app.include_router(verify_router)


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError):
    """Domain errors a route did not translate itself."""
    logger.info("%s %s -> %s", request.method, request.url.path, exc.code.value)
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 400),
        content={"detail": exc.to_dict()},
    )


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.error("Health check database probe failed: %s", exc)
        database = "unavailable"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        service="veriflow",
        database=database,
    )


def run() -> None:
    """Console entry point (``veriflow``)."""
    uvicorn.run("veriflow.app.main:app", host="0.0.0.0", port=8000, reload=settings.debug)


if __name__ == "__main__":
    run()
