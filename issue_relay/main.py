"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from issue_relay.api import mappings, webhooks
from issue_relay.config import decode_private_key, settings
from issue_relay.models.base import SessionLocal, init_db
from issue_relay.scheduler import IntentMonitor
from issue_relay.security import BasicAuthMiddleware
from issue_relay.services.installations import (
    InstallationCache,
    InstallationResolver,
    build_app_api,
    token_client_factory,
)
from issue_relay.services.loop_filter import LoopFilter
from issue_relay.services.sync_engine import SyncRelay

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_resolver(app_id: int, private_key: str, excluded_installation_ids=()) -> InstallationResolver:
    return InstallationResolver(
        build_app_api(
            app_id,
            decode_private_key(private_key),
            settings.github_api_url,
            settings.request_timeout_seconds,
        ),
        InstallationCache(),
        token_client_factory(settings.github_api_url, settings.request_timeout_seconds),
        excluded_installation_ids=excluded_installation_ids,
        page_size=settings.installation_page_size,
        refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
    )


def build_relay() -> SyncRelay:
    settings.validate_github()
    return SyncRelay(
        session_factory=SessionLocal,
        source_resolver=build_resolver(
            settings.source_app_id,
            settings.source_app_private_key,
            settings.excluded_installation_id_set(),
        ),
        hub_resolver=build_resolver(settings.hub_app_id, settings.hub_app_private_key),
        loop_filter=LoopFilter(settings.source_bot_login, settings.hub_bot_login),
        hub_org=settings.hub_org,
        hub_repo=settings.hub_repo,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Issue Relay")
    init_db()
    app.state.relay = build_relay()
    monitor = IntentMonitor(
        interval_minutes=settings.intent_check_interval_minutes,
        stale_after_minutes=settings.intent_stale_after_minutes,
    )
    monitor.start()
    yield
    # Shutdown
    logger.info("Stopping Issue Relay")
    monitor.stop()


app = FastAPI(
    title="Issue Relay",
    description="Mirror issues from source organizations into a hub repository and relay changes back",
    version="1.0.0",
    lifespan=lifespan,
)

# Optional built-in auth for the admin API
if settings.auth_enabled:
    if not settings.auth_username or not settings.auth_password:
        raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.auth_username,
        password=settings.auth_password,
    )

# Include API routers
app.include_router(webhooks.router)
app.include_router(mappings.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Issue Relay"}


def run():
    import uvicorn

    uvicorn.run(
        "issue_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
        # In-flight webhooks finish before the listener closes.
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    )


if __name__ == "__main__":
    run()
