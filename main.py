"""
Site Kit service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import register_error_handlers
from api.middleware import register_middleware
from api.routes import router as api_router
from config.settings import Settings, config
from core.bootstrap import SiteKit, build_site_kit

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, site_kit: Optional[SiteKit] = None) -> FastAPI:
    settings = settings or (site_kit.settings if site_kit else config)
    site_kit = site_kit or build_site_kit(settings)

    app = FastAPI(
        title="Site Kit",
        version="1.0.0",
        description="Google services integration: authentication, modules and settings.",
    )
    app.state.site_kit = site_kit

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_error_handlers(app)

    # Routes
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.on_event("startup")
    async def on_startup():
        await site_kit.startup()
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await site_kit.shutdown()

    return app


if __name__ == "__main__":
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
