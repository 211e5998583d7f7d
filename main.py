"""
Main application entry point
Starts the API server, or a scan worker / queue command from the CLI
"""

import asyncio
import argparse
import sys
from datetime import datetime
from pathlib import Path
from contextlib import asynccontextmanager
import structlog
import uvicorn
from fastapi.responses import JSONResponse
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from photo_extractor.core.config import ApplicationConfig
from photo_extractor.core.components import build_components
from photo_extractor.core.logging import configure_logging
from photo_extractor.api.routes import router as api_router
from photo_extractor.api.websocket_routes import router as ws_router
from photo_extractor.api.websocket import ws_manager
from photo_extractor.cli.worker_manager import (
    run_worker_command,
    queue_stats_command,
    clean_jobs_command
)

# Configure logging first
configure_logging()
logger = structlog.get_logger()

# Global application state
app_state = {
    "config": None,
    "components": None,
    "db_manager": None,
    "scan_service": None,
    "publisher": None,
    "ws_manager": ws_manager
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""

    # Startup
    logger.info("Starting Photo Extractor API")

    app_state["config"] = ApplicationConfig()
    logger.info("Configuration loaded",
                storage=app_state["config"].storage.storage_backend)

    components = await build_components(app_state["config"])
    app_state["components"] = components
    app_state["db_manager"] = components.db
    app_state["scan_service"] = components.scan_service
    app_state["publisher"] = components.publisher

    # Development storage is served by this process
    if app_state["config"].storage.storage_backend == "local":
        app.mount(
            "/uploads/photos",
            StaticFiles(directory=str(app_state["config"].storage.local_storage_dir)),
            name="uploads"
        )

    logger.info("Photo Extractor API initialized")

    yield

    # Shutdown
    logger.info("Shutting down")

    if app_state["components"]:
        await app_state["components"].close()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Photo Extractor",
    description="Collects matching photos from a shared library into blob storage",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS - Allow frontend to access the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(api_router, prefix="/api", tags=["api"])
app.include_router(ws_router, tags=["websocket"])


@app.get("/")
async def root():
    return {
        "service": "Photo Extractor",
        "status": "operational",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check covering the database, Redis and the job queue"""
    components = app_state["components"]
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "components": {}
    }

    if components is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": "Application not initialized"}
        )

    issues = []

    # Database check
    try:
        async with components.db.get_session() as session:
            await session.execute(text("SELECT 1"))
        health_status["components"]["database"] = {"status": "healthy"}
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
        issues.append("database_connection_failed")

    # Redis check
    try:
        await components.redis.ping()
        health_status["components"]["redis"] = {"status": "healthy"}
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        health_status["components"]["redis"] = {"status": "unhealthy", "error": str(e)}
        issues.append("redis_connection_failed")

    # Queue check
    try:
        stats = await components.queue.stats()
        health_status["components"]["queue"] = {"status": "healthy", **stats}
    except Exception as e:
        logger.error("Queue health check failed", error=str(e))
        health_status["components"]["queue"] = {"status": "unhealthy", "error": str(e)}
        issues.append("queue_unavailable")

    status_code = 200
    if issues:
        health_status["status"] = "unhealthy"
        health_status["issues"] = issues
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Photo Extractor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                 Start the web server
  python main.py --worker        Run a scan worker
  python main.py --queue-stats   Show job counts per state
  python main.py --clean-jobs    Remove finished jobs past retention
        """
    )

    parser.add_argument(
        "--worker",
        action="store_true",
        help="Run a scan worker instead of the web server"
    )

    parser.add_argument(
        "--queue-stats",
        action="store_true",
        help="Show job queue statistics"
    )

    parser.add_argument(
        "--clean-jobs",
        action="store_true",
        help="Remove completed and failed jobs past their retention"
    )

    # Server Options
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind the web server (default: 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind the web server (default: 8000)"
    )

    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Disable hot reload (useful for production)"
    )

    return parser.parse_args()


async def run_cli_command(args):
    """Execute CLI commands"""
    if args.worker:
        return await run_worker_command()
    elif args.queue_stats:
        return await queue_stats_command()
    elif args.clean_jobs:
        return await clean_jobs_command()

    return None


if __name__ == "__main__":
    args = parse_arguments()

    # Create necessary directories
    Path("data").mkdir(exist_ok=True)
    Path("logs").mkdir(exist_ok=True)
    Path("config").mkdir(exist_ok=True)

    if any([args.worker, args.queue_stats, args.clean_jobs]):
        exit_code = asyncio.run(run_cli_command(args))
        sys.exit(exit_code or 0)

    # Otherwise, run the web server
    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=not args.no_reload,
        log_config=None  # Use our custom logging configuration
    )
