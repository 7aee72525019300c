import logging
import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from netinventory.core.config import settings
from netinventory.api.v1.api import api_router
from netinventory.db.session import engine, SessionLocal
from netinventory.db import models
from netinventory.services.scan_queue_service import scan_queue_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)

logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine, checkfirst=True)

app = FastAPI(
    title="Network Inventory API",
    description="Network discovery scans, device inventory and IP address management",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router, prefix="/api/v1")

@app.on_event("startup")
async def startup_event():
    logger.info("Network Inventory API starting up...")
    logger.info(f"CORS origins: {settings.CORS_ORIGINS}")

    if not settings.START_SCAN_WORKER:
        logger.info("Scan worker disabled (START_SCAN_WORKER=false)")
        return

    with SessionLocal() as db:
        scan_queue_service.recover_pending_sessions(db)
    scan_queue_service.start_worker()

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Network Inventory API shutting down...")
    scan_queue_service.stop()

@app.get("/")
async def root():
    return {"message": "Network Inventory API", "version": "1.0.0"}

@app.get("/health")
async def health_check():
    return {"status": "healthy", "scan_queue": scan_queue_service.queue_snapshot()}
