"""FastAPI application entry point."""
import logging
from pathlib import Path

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from fitlog.config import settings
from fitlog.database import init_db
from fitlog.logging_config import setup_logging
from fitlog.routers import imports

setup_logging()
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title="fitlog",
    description="Activity import pipeline for the fitness tracker",
    version="0.1.0"
)

# Session cookie set by the login flow identifies the caller
app.add_middleware(SessionMiddleware, secret_key=settings.SECRET_KEY)

# Register routers
app.include_router(imports.router)


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    if settings.DATABASE_URL.startswith("sqlite:///"):
        db_path = Path(settings.DATABASE_URL.replace("sqlite:///", ""))
        db_path.parent.mkdir(parents=True, exist_ok=True)

    init_db()
    logger.info("Database initialized")
    logger.info("Running in %s mode", settings.ENVIRONMENT)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("fitlog.main:app", host="0.0.0.0", port=8080, reload=settings.is_development)
