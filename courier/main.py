import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.exceptions import DispatchError
from .core.logging_setup import setup_logging
from .core.settings import settings
from .db import Base, engine
from .routers import orders, riders
from .sweeper import OfferSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    Base.metadata.create_all(bind=engine)

    sweeper = OfferSweeper() if settings.SWEEP_ENABLED else None
    if sweeper:
        sweeper.start()
    app.state.sweeper = sweeper

    yield

    if sweeper:
        sweeper.stop()


app = FastAPI(title="Courier Dispatch", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.details})


@app.get("/health")
def health():
    return {"status":"ok"}

app.include_router(orders.router, prefix="/orders")
app.include_router(riders.router, prefix="/riders")
