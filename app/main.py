"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import os
from datetime import datetime
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .core.config import settings
from .core.logging_config import configure_logging

from .api.routers import mapping, uploads, workflows

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        print("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        from .api.dependencies import get_pipeline_runner

        print("Initializing database tables...")
        upload_store = get_pipeline_runner().upload_store
        if hasattr(upload_store, "ensure_table"):
            upload_store.ensure_table()
        print("✓ uploads table ready")
    except Exception as e:
        print(f"ERROR: Failed to initialize database tables: {e}")
        print("The application cannot start without proper database setup.")
        raise

    yield


app = FastAPI(
    title="Data Intake API",
    version="1.0.0",
    description="Upload spreadsheets, map their columns onto destination tables, validate and deploy the rows",
    lifespan=lifespan
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads.router)
app.include_router(mapping.router)
app.include_router(workflows.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Data Intake API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "data-intake-api"
    }
