import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from receipt_learning.config import settings
from receipt_learning.services.learning import shutdown_learning_services

logging.basicConfig(level=settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush learned patterns still waiting to be written
    shutdown_learning_services()


app = FastAPI(
    title=settings.APP_NAME,
    description="Receipt field extraction that learns from corrections",
    version="0.1.0",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
async def root():
    return {
        "message": settings.APP_NAME,
        "version": "0.1.0",
        "status": "running"
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

# Import routers
from receipt_learning.routers import receipts, review, analytics

# Include routers
app.include_router(receipts.router)
app.include_router(review.router)
app.include_router(analytics.router)
