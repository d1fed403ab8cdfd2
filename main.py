from contextlib import asynccontextmanager
import logging
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from src.api.v1 import router as v1_endpoint
from src.scheduler import start_cmv_refresh, stop_cmv_refresh
from src.utils.logger import HealthCheckFilter, api_logger, scheduler_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Load environment variables
    load_dotenv()
    logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())

    # Startup
    if os.environ.get("CMV_REFRESH_ENABLED", "true").lower() != "false":
        scheduler_logger.info("Starting CMV refresh scheduler...")
        start_cmv_refresh()
    yield
    # Shutdown
    scheduler_logger.info("Stopping CMV refresh scheduler...")
    stop_cmv_refresh()


app = FastAPI(
    title="Cardledger API",
    description="Card price lookup and collection tracking",
    version="1.0.0",
    lifespan=lifespan,
)

origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # Allow origins in the list
    allow_credentials=True,  # Allow cookies (if needed)
    allow_methods=["*"],  # Allow all methods (GET, POST, etc.)
    allow_headers=["*"],  # Allow all headers
)


app.include_router(v1_endpoint, prefix="/api/v1", tags=["API Version 1"])


@app.get("/", tags=["Root"])
def read_root():
    return {"status": "ok", "message": "Welcome Cardledger API!"}


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint for monitoring"""
    return {"status": "healthy", "message": "Cardledger API is running", "version": "1.0.0"}


# surfaces schema errors at import time instead of on first /docs hit
try:
    app.openapi()
    api_logger.info("OpenAPI schema generated successfully")
except Exception as e:
    api_logger.exception("Failed to generate OpenAPI schema: %s", e)

# To run this application for development:
# uvicorn main:app --reload
