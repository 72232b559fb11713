import logging
import uuid
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from seatlock.config import settings
from seatlock.errors import InvalidInput, SeatLockError
from seatlock.logging_setup import TRACE_ID_CTX, setup_logging
from seatlock.modules.trips.router import router as trips_router
from seatlock.services.seat_lock import SeatLockManager, get_lock_manager
from seatlock.services.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if settings.SWEEPER_IN_PROCESS:
        # the memory store has no worker to sweep it
        manager = await get_lock_manager()
        sweeper = ExpirySweeper(manager.store, clock=manager.clock, batch_size=settings.SWEEP_BATCH_SIZE)
        sweeper.start(settings.SWEEP_INTERVAL_SECONDS)
    yield
    if sweeper is not None:
        await sweeper.stop()
    await (await get_lock_manager()).store.close()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# initialize logging and Sentry
setup_logging(logging.DEBUG if settings.DEBUG else logging.INFO)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)
    app.add_middleware(SentryAsgiMiddleware)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(SeatLockError)
async def seat_lock_error_handler(request: Request, exc: SeatLockError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "seats": exc.seats},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content={"detail": jsonable_encoder(exc.errors()), "code": InvalidInput.code, "seats": []},
    )


app.include_router(trips_router, prefix="/trips", tags=["seat locks"])


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready(manager: SeatLockManager = Depends(get_lock_manager)):
    # readiness: the lock store must answer
    store = manager.store
    try:
        await store.ping()
    except Exception as exc:
        logger.warning("Lock store not ready: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable", "store": type(store).__name__})
    return {"status": "ready", "store": type(store).__name__}
