# src/fitchallenge/main.py
import os
import logging

import uvicorn
from fastapi import FastAPI, Request  # type: ignore
from fastapi.responses import JSONResponse  # type: ignore

from .config import settings
from .exceptions import ChallengeError, ChallengeLimitError, NotFoundError
from .metrics import start_metrics_server
from .models.database import check_db_connection, init_db, wait_for_db
from .routes import router

logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(title="fitchallenge")
app.include_router(router)


@app.exception_handler(ChallengeError)
async def challenge_error_handler(request: Request, exc: ChallengeError):
    """Surface validation errors to the UI with their raw message."""
    if isinstance(exc, ChallengeLimitError):
        status = 409
    elif isinstance(exc, NotFoundError):
        status = 404
    else:
        status = 400
    logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.on_event("startup")
async def on_startup():
    """Initialize services on startup."""
    try:
        # 1) Wait for database
        await wait_for_db()

        # 2) Create tables
        await init_db()

        # 3) Start metrics server
        start_metrics_server(settings.metrics_port)

        # 4) Check database connection
        if not await check_db_connection():
            raise RuntimeError("Database connection failed")

        logger.info(f"Participation limit: {settings.max_active_challenges} active challenges")
        logger.info("Application startup completed successfully")
    except Exception as e:
        logger.error(f"Error during startup: {e}")
        raise


if __name__ == "__main__":
    uvicorn.run("fitchallenge.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
