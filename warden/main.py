"""
Warden - Zero Trust request-risk engine

Application factory and server entry point.
"""

from __future__ import annotations

from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from warden.api.routes import setup_admin_routes, setup_routes
from warden.capabilities.denylist import Denylist
from warden.capabilities.geolocation import GeoLocator
from warden.core.config import WardenConfig, load_config
from warden.core.logging import setup_logging
from warden.middleware import ZeroTrustMiddleware
from warden.zero_trust.pipeline import ZeroTrustPipeline
from warden.zero_trust.verification import ContinuousVerifier

logger = structlog.get_logger(__name__)


def create_app(
    config: Optional[WardenConfig] = None,
    pipeline: Optional[ZeroTrustPipeline] = None,
    geolocator: Optional[GeoLocator] = None,
    denylist: Optional[Denylist] = None,
    continuous: bool = True,
) -> FastAPI:
    """
    Create and configure the Warden FastAPI application.

    Args:
        config: Optional configuration; loaded from the environment if omitted
        pipeline: Optional pre-built pipeline (overrides config and capabilities)
        geolocator: Optional geolocation capability
        denylist: Optional threat-intelligence denylist
        continuous: Enable continuous re-verification of sessions

    Returns:
        Configured FastAPI application
    """
    if pipeline is not None:
        config = pipeline.config
    elif config is None:
        config = load_config()

    setup_logging(config.log_level.value, config.log_format)

    if pipeline is None:
        pipeline = ZeroTrustPipeline(config, geolocator=geolocator, denylist=denylist)

    app = FastAPI(
        title="Warden",
        description="""
        Zero Trust request-risk engine with:
        - Multi-factor risk scoring
        - Threat detection
        - Device trust
        - Fail-closed access decisions
        """,
        version="1.0.0",
    )
    app.state.pipeline = pipeline

    setup_routes(app, pipeline)
    setup_admin_routes(app, pipeline)

    if config.middleware.enabled:
        verifier = ContinuousVerifier(pipeline) if continuous else None
        app.add_middleware(ZeroTrustMiddleware, pipeline=pipeline, verifier=verifier)

    logger.info(
        "Warden application created",
        environment=config.environment,
        middleware=config.middleware.enabled,
    )
    return app


def run_server(
    config: Optional[WardenConfig] = None,
    reload: bool = False,
) -> None:
    """
    Run the Warden server.

    Args:
        config: Optional configuration; loaded from the environment if omitted
        reload: Enable auto-reload for development
    """
    config = config or load_config()

    if reload:
        uvicorn.run(
            "warden.main:create_app",
            factory=True,
            host=config.host,
            port=config.port,
            reload=True,
            log_level=config.log_level.value.lower(),
        )
        return

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.value.lower(),
    )
