import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from paywall.config import settings
from paywall.routers import access, cron, subscription, user, webhooks
from paywall.schemas import HealthResponse

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info(f"🚀 Starting Paywall API on port {settings.port}")
    logger.info(f"🌍 Environment: {settings.environment}")
    logger.info(f"📚 Free article limit: {settings.free_article_limit}")
    yield
    logger.info("👋 Shutting down Paywall API")


app = FastAPI(
    title="Paywall API",
    description="Subscription reconciliation and metered article access",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router, prefix="/api")
app.include_router(subscription.router, prefix="/api")
app.include_router(access.router, prefix="/api")
app.include_router(user.router, prefix="/api")
app.include_router(cron.router, prefix="/api")


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check() -> HealthResponse:
    """Health check endpoint"""
    return HealthResponse()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "paywall.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
    )
