import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ips_service.config import SEED_DEMO_SUMMARIES, StoreSettings
from ips_service.database import connect_store
from ips_service.errors import MalformedRecord, StoreError
from ips_service.routers import api, pages
from ips_service.services.demo import seed_demo_summaries
from ips_service.services.loader import make_source

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = StoreSettings.from_env()
    logger.info("Starting IPS service (%s store)...", settings.store)
    db = await connect_store(settings)
    app.state.db = db
    app.state.source = make_source(db, settings.store)
    logger.info("Database initialized")
    if SEED_DEMO_SUMMARIES:
        await seed_demo_summaries(app.state.source)
    yield
    await db.close()
    logger.info("IPS service shut down")


app = FastAPI(
    title="IPS Service",
    description="International Patient Summary lookup over relational or document stores",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.warning("Store failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Summary store unavailable, retry later", "error": type(exc).__name__},
        headers={"Retry-After": "5"},
    )


@app.exception_handler(MalformedRecord)
async def malformed_record_handler(request: Request, exc: MalformedRecord):
    logger.error("Malformed record on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


app.include_router(api.router)
app.include_router(pages.router)


@app.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "store": request.app.state.source.kind,
        "engine": request.app.state.db.engine,
    }
