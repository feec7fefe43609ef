import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import LOG_LEVEL
from app.database import close_db, init_db
from app.routers import ems, stream
from app.services.errors import DispatchError

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting EMS dispatch engine...")
    await init_db()
    logger.info("Database initialized")
    yield
    await close_db()
    logger.info("EMS dispatch engine shut down")


app = FastAPI(
    title="EMS Dispatch",
    description="Dispatch coordination engine for emergency medical service requests",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(ems.router)
app.include_router(stream.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
