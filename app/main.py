import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text

from app.core.database import SessionDep, init_db
from app.core.error_handling import setup_error_handlers
from app.core.logging import app_logger
from app.core.middleware import setup_middleware
from app.core.rate_limit import setup_rate_limiting, cleanup_rate_limiting
from app.core.settings import settings
from app.src.jobs.security_cleanup import start_scheduler, stop_scheduler
from app.src.routes import auth, oauth, two_factor, unlock

# Import all models to ensure they're registered with SQLModel metadata
from app.src.models import (  # noqa: F401
    AccountUnlockToken,
    LoginAttempt,
    LoginOtp,
    OAuthConnection,
    PasswordReset,
    User,
    UserEmail,
)

origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5004",
    "http://localhost:5173",
    settings.frontend_url,
]

_testing_mode = os.environ.get("TESTING", "").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app_logger.info("Starting up...")
    await init_db()
    if not _testing_mode:
        start_scheduler()
    app_logger.info("DB connected")
    yield
    app_logger.info("Shutting down...")
    stop_scheduler()
    cleanup_rate_limiting()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

setup_rate_limiting(app)
setup_error_handlers(app)
setup_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(dict.fromkeys(origins)),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/auth", tags=["auth"])
app.include_router(two_factor.router, prefix="/auth/2fa", tags=["two-factor"])
app.include_router(oauth.router, prefix="/auth", tags=["oauth"])
app.include_router(unlock.router, prefix="/unlock", tags=["account-unlock"])


@app.get("/health")
async def health_check():
    """Health check for Docker healthcheck"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "user-service"
    }


@app.get("/readiness")
async def readiness_check(session: SessionDep):
    """Readiness check with database connectivity"""
    try:
        await session.exec(text("SELECT 1"))
        return {
            "status": "ready",
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    except SQLAlchemyError as e:
        raise HTTPException(500, {"status": "not_ready", "error": str(e)})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
