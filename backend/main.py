"""Business Assistant Testing Service - FastAPI Application"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from routers import testing, unanswered
from services.database import init_database, close_database, is_database_ready


settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup."""
    await init_database()
    yield
    await close_database()


app = FastAPI(
    title="Business Assistant Testing Service",
    description="Grounded customer-service assistant with confidence scoring and guardrails",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(testing.router, prefix="/api/testing", tags=["Chatbot Testing"])
app.include_router(unanswered.router, prefix="/api", tags=["Unanswered Questions"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "business-assistant",
        "database": await is_database_ready(),
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Business Assistant Testing Service",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
