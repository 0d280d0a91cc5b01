"""
CaseLink - Person identity resolution across criminal case records
FastAPI Application Entry Point

Run with:

    uvicorn api.main:app --host 127.0.0.1 --port 8000
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import identity_router
from api.services.case_store import get_case_store
from api.services.resilience import StoreUnavailableError, call_store, describe_failure
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the case store on startup so schema problems surface early."""
    try:
        store = get_case_store()
        logger.info(f"Case store ready at {store.db_path}")
    except Exception as e:
        logger.error(f"Failed to open case store: {e}")

    yield  # Application runs here

    logger.info("CaseLink shutting down")


app = FastAPI(
    title="CaseLink",
    description="Links accused persons and sureties across cases into one identity",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(identity_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        sanitized.pop("ctx", None)
        sanitized_errors.append(sanitized)

    # Empty search text gets its own message
    for error in errors:
        if list(error.get("loc", [])) == ["query", "q"]:
            return JSONResponse(
                status_code=400,
                content={"error": "Query cannot be empty", "detail": sanitized_errors}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check that verifies the case store answers queries."""
    checks = {}
    try:
        await call_store(lambda: get_case_store().count_by_custody_state())
        checks["case_store"] = "ok"
    except StoreUnavailableError as e:
        checks["case_store"] = describe_failure(e)

    all_healthy = all(v == "ok" for v in checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "service": "caselink",
        "checks": checks,
    }
