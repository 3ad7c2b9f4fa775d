# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application for Perks Gate.

This module wires the HTTP API of the access-resolution service and
manages its lifecycle.

**HTTP Endpoints**

* ``/access/*`` - decision status, cache-aware resolution and the
  animation flag (:mod:`app.api.access`).
* ``/access-request`` - the caller's manual access request
  (:mod:`app.api.access_request`).
* ``/admin/*`` - request review, audit log and whitelist operations
  (:mod:`app.api.admin`).
* ``/partners`` - partner configuration (:mod:`app.api.partners`).
* ``/auth/*`` - API key login/logout and the caller's identity
  (:mod:`app.api.auth`).
* ``GET /healthz`` - liveness probe with cache statistics.

**Errors**

Every :class:`app.access.exceptions.PortalError` is rendered as
``{"error": {"code": ..., "message": ..., "details"?: ...}}`` with the
exception's status code.  Request body validation failures use the same
shape with code ``VALIDATION_ERROR`` and status 400.

**Logging**

Structured JSON logging is configured at startup using the
``LOG_LEVEL`` setting.

Architecture
------------
The async lifespan context manager handles startup and shutdown:

1. Configure logging and create database tables.
2. Yield (application serves requests).
3. Close upstream HTTP clients.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.access.exceptions import PortalError, ValidationError
from app.access.portfolio import get_portfolio_cache
from app.access.whitelist import get_whitelist_cache
from app.api import access, access_request, admin, auth, partners
from app.clients.catalog import close_catalog_clients
from app.clients.identity_authority import close_identity_authority_client
from app.clients.portfolio import close_portfolio_client
from app.config import (
    ADMIN_DOMAINS,
    ADMIN_EMAILS,
    ADMIN_OPEN_WHEN_UNCONFIGURED,
    CORS_ORIGINS,
    HTTP_HOST,
    HTTP_PORT,
    LOG_LEVEL,
    PRIMARY_DOMAIN,
)
from app.db.session import init_database


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Produces one JSON object per log line with fields ``timestamp``,
    ``level``, ``logger``, ``message``, ``module`` and ``funcName``, plus
    ``exception`` when the record carries one.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Install the JSON formatter on the root logger.

    Existing handlers are removed first to prevent duplicate output
    when running under uvicorn.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JSONFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("perks.main")


# ======================================================================
# Application lifespan
# ======================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    _configure_logging()
    logger.info(
        "Perks Gate starting: HTTP=%s:%d, primary_domain=%s, log_level=%s",
        HTTP_HOST, HTTP_PORT, PRIMARY_DOMAIN, LOG_LEVEL,
    )
    if not ADMIN_EMAILS and not ADMIN_DOMAINS:
        if ADMIN_OPEN_WHEN_UNCONFIGURED:
            logger.warning(
                "No admin allow-list configured and PERKS_ADMIN_OPEN_WHEN_UNCONFIGURED=true: "
                "every authenticated user is an admin"
            )
        else:
            logger.warning("No admin allow-list configured: no user has admin access")

    init_database()

    yield

    logger.info("Perks Gate shutting down")
    await close_identity_authority_client()
    await close_portfolio_client()
    await close_catalog_clients()


# ======================================================================
# FastAPI application
# ======================================================================

app = FastAPI(
    title="Perks Gate",
    description=(
        "Access resolution for the partner perks portal. Decides whether "
        "an authenticated member may access perks, caches the decision, "
        "and runs the manual access request workflow."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = {
        ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body": err.get("msg", "Invalid value")
        for err in exc.errors()
    }
    error = ValidationError("Invalid request", fields=fields)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


app.include_router(access.router)
app.include_router(access_request.router)
app.include_router(admin.router)
app.include_router(partners.router)
app.include_router(auth.router)


@app.get("/healthz", tags=["health"])
async def healthz() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "ok",
            "cache": {
                "whitelist": get_whitelist_cache().stats(),
                "portfolio": get_portfolio_cache().stats(),
            },
        },
        status_code=200,
    )


def main() -> None:
    import uvicorn

    uvicorn.run("app.main:app", host=HTTP_HOST, port=HTTP_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
