# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Criage Repository Server

FastAPI application serving the package index over HTTP.

Usage:
    criage-repository --config repository.yaml
"""

import argparse
import logging
import time
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from criage import __version__
from criage.core.errors import CriageError, sanitize_error_for_user
from criage.core.logging import configure_logging, log_event

from . import api
from .config import ServerConfig, load_server_config
from .index import IndexManager


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    """
    Build the repository application.

    The index is loaded and the storage directory scanned before the app is
    returned, so the first request already sees every stored archive.
    """
    config = config or load_server_config()
    configure_logging(config.log_level, config.log_format)
    logger = logging.getLogger("criage.api")

    app = FastAPI(
        title="Criage Package Repository",
        description="Package index, search and archive distribution",
        version=__version__,
    )

    if config.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        log_event(
            logger,
            f"{request.method} {request.url.path} {duration_ms:.1f}ms",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )
        return response

    @app.exception_handler(CriageError)
    async def criage_error_handler(request: Request, exc: CriageError):
        if exc.status_code >= 500:
            log_event(logger, f"{request.method} {request.url.path} failed", "ERROR", error=exc.to_dict())
        return api.error_envelope(exc.status_code, sanitize_error_for_user(exc, include_type=False))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return api.error_envelope(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
        )
        return api.error_envelope(400, f"Invalid request: {errors}")

    storage_path = Path(config.storage_path)
    storage_path.mkdir(parents=True, exist_ok=True)
    index_manager = IndexManager(storage_path, Path(config.index_path), config.allowed_formats)
    index_manager.load()
    added = index_manager.scan()
    logger.info(f"Index ready: {added} new archives indexed from {storage_path}")

    # Runtime objects for dependency injection
    app.state.server_config = config
    app.state.index_manager = index_manager

    @app.on_event("shutdown")
    async def shutdown():
        index_manager.close()

    app.include_router(api.router)
    return app


def main(argv=None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Criage package repository server")
    parser.add_argument("--config", help="Path to the server YAML config")
    args = parser.parse_args(argv)

    config = load_server_config(args.config)
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
