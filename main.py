# main.py
import os
import logging
from typing import AsyncIterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from dotenv import load_dotenv

from logging_context import configure_logging, new_lookup_id
from lookup import SearchLimits, lookup_appointments
from meevo import MeevoClient, TokenCache

# ============================================================
# ENV & CONSTANTS
# ============================================================
load_dotenv()

def _safe_int(env_var: str, default: str) -> int:
    raw = os.getenv(env_var, default)
    try:
        value = int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {env_var}: {raw!r}") from None
    if value < 1:
        raise ValueError(f"{env_var} must be >= 1, got {value}")
    return value

def _safe_float(env_var: str, default: str) -> float:
    raw = os.getenv(env_var, default)
    try:
        value = float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid number for {env_var}: {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{env_var} must be > 0, got {value}")
    return value

MEEVO_AUTH_URL = os.getenv("MEEVO_AUTH_URL", "https://marketplace.meevo.com/oauth2/token").strip()
MEEVO_API_URL = os.getenv("MEEVO_API_URL", "https://na1pub.meevo.com/publicapi/v1").strip()
MEEVO_CLIENT_ID = os.getenv("MEEVO_CLIENT_ID", "").strip()
MEEVO_CLIENT_SECRET = os.getenv("MEEVO_CLIENT_SECRET", "").strip()
MEEVO_TENANT_ID = os.getenv("MEEVO_TENANT_ID", "").strip()
MEEVO_LOCATION_ID = os.getenv("MEEVO_LOCATION_ID", "").strip()

ENVIRONMENT = os.getenv("ENVIRONMENT", "PRODUCTION").strip()
LOCATION_NAME = os.getenv("LOCATION_NAME", "Phoenix Encanto").strip()
LOCATION_TIMEZONE = os.getenv("LOCATION_TIMEZONE", "America/Phoenix").strip()
SERVICE_NAME = os.getenv("SERVICE_NAME", "Lookup Appointment").strip()
PORT = _safe_int("PORT", "3001")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip()

HTTP_TIMEOUT = 30  # token exchange and anything without its own timeout

SEARCH_LIMITS = SearchLimits(
    page_concurrency=_safe_int("PAGE_CONCURRENCY", "10"),
    detail_concurrency=_safe_int("DETAIL_CONCURRENCY", "50"),
    search_page_timeout=_safe_float("SEARCH_PAGE_TIMEOUT", "30"),
    linked_page_timeout=_safe_float("LINKED_PAGE_TIMEOUT", "3"),
    detail_timeout=_safe_float("DETAIL_TIMEOUT", "2"),
    appointment_timeout=_safe_float("APPOINTMENT_TIMEOUT", "5"),
)

try:
    LOCATION_TZ = ZoneInfo(LOCATION_TIMEZONE)
except (ZoneInfoNotFoundError, ValueError):
    raise ValueError(f"Unknown LOCATION_TIMEZONE: {LOCATION_TIMEZONE!r}") from None

configure_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"Meevo {SERVICE_NAME} ({LOCATION_NAME})")

# ============================================================
# MODELS
# ============================================================

class LookupRequest(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None

# ============================================================
# DEPENDENCIES
# ============================================================

# one token for the whole process; every lookup reads it, the first stale read refreshes it
token_cache = TokenCache(MEEVO_AUTH_URL, MEEVO_CLIENT_ID, MEEVO_CLIENT_SECRET)

def get_token_cache() -> TokenCache:
    return token_cache

async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
        yield client

def get_search_limits() -> SearchLimits:
    return SEARCH_LIMITS

def _error_message(exc: Exception) -> str:
    """Prefer the upstream's own error message when Meevo sent one."""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
    return str(exc) or type(exc).__name__

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # the voice agent only reads the envelope, so bad bodies still get a 200
    return JSONResponse({"success": False, "error": "Invalid request body"})

# ============================================================
# ROUTES
# ============================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "environment": ENVIRONMENT,
        "location": LOCATION_NAME,
        "service": SERVICE_NAME,
    }

@app.post("/lookup")
async def lookup(
    body: LookupRequest,
    http: httpx.AsyncClient = Depends(get_http_client),
    tokens: TokenCache = Depends(get_token_cache),
    limits: SearchLimits = Depends(get_search_limits),
):
    lookup_id = new_lookup_id()
    if not body.phone and not body.email:
        return {"success": False, "error": "Please provide phone or email"}

    logger.info("Lookup %s started (phone=%s, email=%s)", lookup_id, bool(body.phone), bool(body.email))
    try:
        auth_token = await tokens.get_token(http)
        meevo = MeevoClient(http, auth_token, MEEVO_API_URL, MEEVO_TENANT_ID, MEEVO_LOCATION_ID)
        return await lookup_appointments(
            meevo,
            phone=body.phone,
            email=body.email,
            tz=LOCATION_TZ,
            limits=limits,
        )
    except Exception as e:
        logger.exception("Lookup error")
        return {"success": False, "error": _error_message(e)}

if __name__ == "__main__":
    import uvicorn

    logger.info("%s lookup server running on port %s", ENVIRONMENT, PORT)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
