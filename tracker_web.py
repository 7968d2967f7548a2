# tracker_web.py
"""
tracker_web.py - HTTP API for the token tracker
Register Solana token addresses, list their snapshot history and trigger the
15m / 30m / 1h update sweep.

The sweep only runs when /api/tokens/update is called (or, if
AUTO_REFRESH_SECONDS > 0, from the background polling task). Point a cron
job or uptime pinger at /api/tokens/update to get timely updates.
"""
import os
import asyncio
import logging
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

import aiohttp
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import uvicorn

import config
from token_tracker import (
    AlreadyTrackedError,
    DependencyError,
    NotFoundError,
    SnapshotRefresher,
    TrackingRegistry,
    ValidationError,
)

# Setup logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)


class AddTokenRequest(BaseModel):
    address: str


class RefreshBusyError(Exception):
    """A sweep is already running."""


class TrackerService:
    """Registry + refresher pair plus the lock that keeps sweeps from overlapping."""

    def __init__(self, store, market_data, *, max_concurrency: int = config.REFRESH_CONCURRENCY):
        self.registry = TrackingRegistry(store, market_data)
        self.refresher = SnapshotRefresher(store, market_data, max_concurrency=max_concurrency)
        self._refresh_lock = asyncio.Lock()
        self.status = {
            "started_at": None,
            "last_refresh": None,
            "last_refresh_result": None,
            "last_refresh_error": None,
            "auto_refresh_running": False,
        }

    async def refresh(self):
        if self._refresh_lock.locked():
            raise RefreshBusyError("A refresh is already in progress")
        async with self._refresh_lock:
            try:
                report = await self.refresher.refresh()
            except DependencyError as e:
                self.status["last_refresh_error"] = str(e)
                raise
            self.status["last_refresh"] = datetime.utcnow().isoformat()
            self.status["last_refresh_result"] = report.to_json()
            self.status["last_refresh_error"] = None
            return report


async def run_auto_refresh(service: TrackerService, interval_seconds: int):
    """Call the sweep every interval_seconds until cancelled."""
    service.status["auto_refresh_running"] = True
    logger.info(f"🚀 Auto refresh every {interval_seconds}s")
    try:
        while True:
            try:
                await service.refresh()
            except RefreshBusyError:
                logger.info("Auto refresh skipped: sweep already running")
            except DependencyError as e:
                logger.error(f"Auto refresh failed: {e}")
            await asyncio.sleep(interval_seconds)
    finally:
        service.status["auto_refresh_running"] = False


def create_app(store=None, market_data=None, *, auto_refresh_seconds: int = config.AUTO_REFRESH_SECONDS) -> FastAPI:
    """
    Build the FastAPI app. `store` and `market_data` default to the Supabase
    store and the configured market-data source, created at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        http_session = None
        active_store, active_market_data = store, market_data
        if active_store is None:
            from supabase_utils import build_token_store
            active_store = build_token_store()
        if active_market_data is None:
            from shared.market_data import build_market_data
            http_session = aiohttp.ClientSession()
            active_market_data = build_market_data(http_session)

        service = TrackerService(active_store, active_market_data)
        service.status["started_at"] = datetime.utcnow().isoformat()
        app.state.service = service

        auto_task = None
        if auto_refresh_seconds > 0:
            auto_task = asyncio.create_task(run_auto_refresh(service, auto_refresh_seconds))

        yield

        # Shutdown
        if auto_task is not None:
            logger.info("🛑 Stopping auto refresh...")
            auto_task.cancel()
            try:
                await auto_task
            except asyncio.CancelledError:
                logger.info("Auto refresh task cancelled successfully")
        if http_session is not None:
            await http_session.close()

    app = FastAPI(
        title="Token Tracker Service",
        description="Delayed 15m / 30m / 1h metric snapshots for Solana tokens",
        version="1.0.0",
        lifespan=lifespan
    )

    # Add CORS middleware for the dashboard frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== Token Endpoints ====================

    @app.post("/api/tokens/add")
    async def add_token(body: AddTokenRequest, request: Request):
        """Start tracking a token address"""
        service: TrackerService = request.app.state.service
        try:
            token = await service.registry.add(body.address)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AlreadyTrackedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except DependencyError as e:
            logger.error(f"Add failed for {body.address}: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        return {"success": True, "token": token.to_json()}

    @app.get("/api/tokens/list")
    async def list_tokens(
        request: Request,
        address: Optional[str] = Query(None, description="Only return this token")
    ):
        """All tracked tokens, newest first"""
        service: TrackerService = request.app.state.service
        try:
            tokens = await service.registry.list(address)
        except DependencyError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return [t.to_json() for t in tokens]

    @app.get("/api/tokens/update")
    @app.post("/api/tokens/update")
    async def update_tokens(request: Request):
        """Apply every overdue 15m / 30m / 1h update"""
        service: TrackerService = request.app.state.service
        try:
            report = await service.refresh()
        except RefreshBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except DependencyError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return report.to_json()

    @app.get("/api/token/{address}")
    async def get_token(address: str, request: Request):
        """Single token with its full snapshot history"""
        service: TrackerService = request.app.state.service
        try:
            token = await service.registry.get(address)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except DependencyError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return token.to_json()

    # ==================== Service Endpoints ====================

    @app.head("/health")
    @app.get("/health")
    async def health():
        """Health check endpoint for UptimeRobot and monitoring"""
        return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}

    @app.get("/status")
    async def status(request: Request):
        """Detailed status endpoint"""
        service: TrackerService = request.app.state.service
        return {
            "service": "Token Tracker Service",
            "tracker_status": dict(service.status),
            "environment": {
                "render": os.getenv("RENDER") is not None,
                "port": os.getenv("PORT", "not set"),
                **config.env_presence(),
            },
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.get("/api/env-test")
    async def env_test():
        """Which credentials the service can see (never their values)"""
        return config.env_presence()

    # ==================== Error Handlers ====================

    @app.exception_handler(500)
    async def internal_error_handler(request, exc):
        """Custom 500 handler"""
        logger.error(f"Internal server error: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred. Please check the logs.",
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    return app


app = create_app()


# ==================== Startup ====================

if __name__ == "__main__":
    logger.info(f"🚀 Starting Token Tracker web service on port {config.PORT}")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=config.PORT,
        log_level="info",
        access_log=True
    )
