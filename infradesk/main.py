from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .database import engine, Base, AsyncSessionLocal
from .routers import port_forwards
from .config import get_settings
from .services.connection_store import SQLConnectionStore
from .services.portforward import build_port_forward_manager, build_forward_monitor
from . import models  # noqa: F401  (registers tables on Base.metadata)
import asyncio
import logging

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="InfraDesk API")

if settings.cors_origin_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(port_forwards.router, prefix="/api", tags=["port-forward"])


@app.get("/health")
async def health():
    manager = getattr(app.state, "port_forward_manager", None)
    return {
        "status": "ok",
        "port_forward": manager.stats() if manager is not None else None,
    }


# Create tables, then bring up the tunnel manager and its background loops
@app.on_event("startup")
async def startup():
    # Retry database connection up to 5 times with exponential backoff
    max_retries = 5
    for attempt in range(max_retries):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")
            break
        except Exception as e:
            if attempt < max_retries - 1:
                wait_time = 2 ** attempt  # Exponential backoff: 1, 2, 4, 8 seconds
                logger.warning(f"Database connection attempt {attempt + 1} failed: {type(e).__name__}: {str(e) or 'No error message'}")
                logger.info(f"Retrying in {wait_time} seconds...")
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts: {type(e).__name__}: {str(e) or 'No error message'}")
                raise

    app.state.port_forward_manager = None
    app.state.port_forward_monitor = None
    try:
        manager = build_port_forward_manager(settings, store=SQLConnectionStore(AsyncSessionLocal))
    except RuntimeError as e:
        # No cluster access: the rest of the API keeps working, port-forward routes answer 503
        logger.error(f"Port forwarding disabled: {e}")
        return

    monitor = build_forward_monitor(manager, settings)
    monitor.start()
    app.state.port_forward_manager = manager
    app.state.port_forward_monitor = monitor


@app.on_event("shutdown")
async def shutdown():
    monitor = getattr(app.state, "port_forward_monitor", None)
    if monitor is not None:
        await monitor.stop()

    manager = getattr(app.state, "port_forward_manager", None)
    if manager is not None:
        await manager.shutdown()

    await engine.dispose()
