"""
Main FastAPI Application Entry Point

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. STARTUP RECOVERY (Feature: startup-recovery)
   - recover_interrupted() called during lifespan startup
   - Evaluations that were "running" when the server stopped become "paused"
     and can be resumed; their in-flight epochs and sessions are failed

2. AUTO-SEED DEFAULT PERSONAS ON STARTUP (Feature: default-personas)
   - ensure_default_personas() seeds the six built-in customer personas when
     the persona table is empty

3. CALL AUDIO (Feature: audio-archive)
   - archived call recordings under BLOB_STORE_DIR are served at /blobs

==============================================================================
"""

import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import uvicorn
import logging
from .controllers import router
from . import config
from .sqlite_service import get_db_service
from .campaign_controller import get_campaign_controller

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

os.makedirs(config.BLOB_STORE_DIR, exist_ok=True)


# ==============================================================================
# LIFESPAN MANAGER (Feature: startup-recovery)
# ==============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup actions:
    1. Seed default personas
    2. Pause evaluations interrupted by the previous shutdown
    """
    logger.info("Starting API server...")
    try:
        db = get_db_service()
        campaigns = get_campaign_controller(db)

        seeded = await db.ensure_default_personas()
        if seeded > 0:
            logger.info(f"Seeded {seeded} default persona(s)")

        recovered = await campaigns.recover_interrupted()
        logger.info(f"Startup recovery completed ({recovered} evaluation(s) paused)")
    except Exception as e:
        logger.error(f"Error during startup: {str(e)}")

    yield

    logger.info("API server shutting down...")


app = FastAPI(title=config.API_TITLE, docs_url="/api/docs", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)

app.mount("/blobs", StaticFiles(directory=config.BLOB_STORE_DIR), name="blobs")


@app.get("/")
async def root():
    return {"message": "Voice Prompt Evolver API", "docs": "/api/docs"}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("src.evolver.main:app", host=config.API_HOST, port=config.API_PORT, reload=config.API_DEBUG)
