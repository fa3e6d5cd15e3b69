"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voipcore.api.v1.routes import api_router
from voipcore.core.config import ConfigManager, get_settings
from voipcore.core.container import ServiceContainer

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Validates provider configuration
    - Builds the service container (storage, telephony, realtime)

    Shutdown:
    - Stops running dialers
    - Waits for background settlements and analysis handoffs
    - Closes provider and Redis connections
    """
    # ========================
    # STARTUP
    # ========================
    logger.info("Starting VoIP settlement core...")

    settings = get_settings()
    strict_validation = settings.environment == "production"

    try:
        from voipcore.core.validation import validate_providers_on_startup
        validate_providers_on_startup(strict=strict_validation)
    except RuntimeError as e:
        if strict_validation:
            logger.error(f"Startup failed: {e}")
            raise
        else:
            logger.warning(f"Configuration warnings (non-fatal in {settings.environment}): {e}")

    # Tests may install a container before startup
    if getattr(app.state, "container", None) is None:
        config = ConfigManager(settings.environment)
        app.state.container = await ServiceContainer.build(settings, config)

    logger.info("VoIP settlement core started successfully")

    yield  # Application is running

    # ========================
    # SHUTDOWN
    # ========================
    logger.info("Shutting down VoIP settlement core...")

    try:
        await app.state.container.close()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")

    logger.info("VoIP settlement core shutdown complete")


app = FastAPI(
    title="VoIP Settlement Core",
    description="Call lifecycle, autodialer and per-call billing settlement",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix=get_settings().api_prefix)


@app.get("/")
async def root():
    return {"message": "VoIP Settlement Core API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns basic health status and which backends are wired.
    """
    health = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }

    container = getattr(app.state, "container", None)
    if container is None:
        health["services"] = "not initialized"
    else:
        health["storage"] = type(container.store).__name__
        health["telephony"] = container.telephony.name
        health["realtime"] = type(container.publisher).__name__

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
