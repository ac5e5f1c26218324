from contextlib import asynccontextmanager
import asyncio
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os

from KitchenCart.routers import two_factor_routes, websocket_routes
from KitchenCart.database.db import create_db_and_tables
from KitchenCart.handlers.exception_handlers import register_exception_handlers
from KitchenCart.scripts.init_suppliers import init_suppliers
from KitchenCart.services.system.maintenance_scheduler import maintenance_scheduler
from KitchenCart.services.system.supplier_operation_service import parked_logins
from KitchenCart.services.system.task_service import task_service
from KitchenCart.services.system.websocket_service import start_ping_task
from KitchenCart.utils.config import log_level

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up...")
    create_db_and_tables()

    try:
        init_suppliers()
    except Exception as e:
        # Existing rows still serve; a seeding failure should not block startup
        logger.error(f"Failed to initialize suppliers: {e}", exc_info=True)

    background = [
        asyncio.create_task(task_service.start_worker()),
        asyncio.create_task(start_ping_task()),
    ]
    logger.info("Task worker and WebSocket ping started")

    await maintenance_scheduler.start()

    yield  # App continues running

    logger.info("Shutting down...")
    await maintenance_scheduler.stop()

    await task_service.stop_worker()
    for job in background:
        job.cancel()
    logger.info("Task worker stopped")

    await parked_logins.close_all()
    logger.info("Parked browser sessions closed")


app = FastAPI(
    title="KitchenCart",
    description="Browser automation for ordering from foodservice supplier websites.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

register_exception_handlers(app)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
cors_origins_list = [origin.strip() for origin in cors_origins.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(two_factor_routes.router, tags=["Two-Factor"])
app.include_router(websocket_routes.router, tags=["WebSocket"])


@app.get("/health")
async def health():
    return {"status": "ok", "worker_running": task_service.is_worker_running}


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("KitchenCart.main:app", host="0.0.0.0", port=port, reload=False)
