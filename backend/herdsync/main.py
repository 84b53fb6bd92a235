"""
HerdSync - Offline Sync Agent for farm records
Durable offline queue, sequential sync with retry, conflict reconciliation and
stuck-item alerts for livestock records captured in the field.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import alerts, conflicts, queue
from .core.config import settings
from .core.dependencies import get_connectivity
from .models.base import init_db
from .services.connectivity import ConnectivityMonitor, connectivity_monitor
from .services.offline_queue import offline_queue
from .services.remote_client import remote_client
from .services.sync_processor import sync_processor

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


async def _periodic_sync(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            if await connectivity_monitor.probe():
                await sync_processor.sync_queue("periodic")
        except Exception as exc:
            logger.warning("Periodic sync pass failed: %s", exc)


def _log_background_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Background sync pass failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # NOTE: In production, use Alembic migrations instead of create_all()
    init_db()

    loop = asyncio.get_running_loop()

    def request_background_sync() -> None:
        future = asyncio.run_coroutine_threadsafe(sync_processor.sync_queue("background"), loop)
        future.add_done_callback(_log_background_failure)

    offline_queue.is_online = connectivity_monitor.is_online
    offline_queue.sync_requester = request_background_sync
    connectivity_monitor.on_reconnect(request_background_sync)

    await connectivity_monitor.probe()
    periodic = None
    if settings.SYNC_INTERVAL_SECONDS > 0:
        periodic = asyncio.create_task(_periodic_sync(settings.SYNC_INTERVAL_SECONDS))
    logger.info("Sync agent started (online=%s)", connectivity_monitor.is_online())

    yield

    if periodic is not None:
        periodic.cancel()
    connectivity_monitor.remove_listener(request_background_sync)
    offline_queue.sync_requester = None
    await remote_client.aclose()


app = FastAPI(
    title="HerdSync Offline Sync API",
    description=(
        "Offline-first sync agent for livestock farm records: durable queue, "
        "sequential replay with bounded retries, field-level conflict merge "
        "and stuck-item alerts."
    ),
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # TODO: Restrict to the PWA origin once it is deployed
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(queue.router, prefix="/api/v1")
app.include_router(conflicts.router, prefix="/api/v1")
app.include_router(alerts.router, prefix="/api/v1")


@app.post("/api/v1/connectivity")
async def set_connectivity(
    online: bool, connectivity: ConnectivityMonitor = Depends(get_connectivity)
):
    """Report a connectivity change from the client (offline -> online triggers sync)."""
    await connectivity.set_online(online)
    return {"online": connectivity.is_online()}


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "HerdSync", "version": settings.VERSION}
