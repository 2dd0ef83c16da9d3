"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadmarket import models  # noqa: F401 - Import to register models
from leadmarket.api.credits import router as credits_router
from leadmarket.api.leads import router as leads_router
from leadmarket.api.marketplace import router as marketplace_router
from leadmarket.api.partner import admin_router
from leadmarket.api.partner import router as partner_router
from leadmarket.api.uploads import router as uploads_router
from leadmarket.api.webhooks import router as webhooks_router
from leadmarket.database import Base, engine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler("leadmarket.log"),
    ],
)

# Set specific log levels for noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    logger.info("Lead marketplace API started")
    yield


app = FastAPI(
    title="Lead Marketplace",
    description="Partner lead ingestion, deduplication and marketplace settlement",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads_router)
app.include_router(leads_router)
app.include_router(marketplace_router)
app.include_router(partner_router)
app.include_router(admin_router)
app.include_router(credits_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
