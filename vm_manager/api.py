"""FastAPI application for the game-server VM manager REST API."""

import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vm_manager import __version__
from vm_manager.errors import VMManagerError
from vm_manager.lifespan import lifespan
from vm_manager.models import ErrorResponse
from vm_manager.routers import console, ftp, root, servers

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="GameControl VM Manager API",
    description="""
    Orchestration daemon for game-server containers on a single host.

    The dashboard backend owns servers and users; this API runs their
    containers, hands out host ports, relays logs and console commands, and
    provisions per-tenant FTP accounts.

    ## Features

    * Create, start, stop, restart, update and delete game servers
    * Two-phase provisioning (download, then play) for CS2
    * Tail and live-stream server logs (server-sent events)
    * Best-effort console command delivery
    * Per-tenant chrooted FTP accounts with server file snapshots

    Every route except `/health` requires the `x-api-key` header.

    ## Documentation

    * **Swagger UI**: Available at `/docs` (interactive API testing)
    * **ReDoc**: Available at `/redoc` (alternative documentation)
    * **OpenAPI Schema**: Available at `/openapi.json`
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    openapi_tags=[
        {
            "name": "root",
            "description": "Liveness, host status, port and schedule utilities",
        },
        {
            "name": "servers",
            "description": "Game-server lifecycle: create, start, stop, restart, update, inspect, delete.",
        },
        {
            "name": "console",
            "description": "Server logs, live console stream and command delivery.",
        },
        {
            "name": "ftp",
            "description": "Per-tenant FTP accounts and server file snapshots.",
        },
    ],
)

# Add CORS middleware to allow requests from the dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"{request.method} {request.url.path}")
    return await call_next(request)


# Include routers
app.include_router(root.router)
app.include_router(servers.router)
app.include_router(console.router)
app.include_router(ftp.router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Custom exception handler for HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail or "Unknown error")).model_dump(),
    )


@app.exception_handler(VMManagerError)
async def vm_manager_exception_handler(request, exc: VMManagerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, message=type(exc).__name__).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error="Invalid request", message=details).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """General exception handler for unexpected errors."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="Internal server error", message=str(exc)).model_dump(),
    )
