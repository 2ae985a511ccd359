"""
REPT - FastAPI Backend
======================
HTTP surface for the real-estate cost calculators.

Request pipeline for a calculation:
1. Input validation (errors -> 422, nothing consumed)
2. Tier access for the calculator (-> 403)
3. Usage quota and rate limit (-> 429)
4. Calculation
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from zoneinfo import ZoneInfo

# Local imports
from market_constants import (
    CALCULATOR_CATALOGUE,
    CalculatorType,
    DEFAULT_MARKET_DATA,
)
from models import Tier
from validation import validate
from cost_calculator import calculate
from usage_quota import (
    DEFAULT_TIMEZONE,
    UsageQuotaEnforcer,
    UsageStoreError,
    caller_key,
    check_tier_access,
    enforcement_message,
    resolve_tier,
    upgrade_recommendations,
    usage_warning,
)

# Configure logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
USAGE_TIMEZONE = os.getenv("USAGE_TIMEZONE", DEFAULT_TIMEZONE)
QUOTA_FAIL_OPEN = os.getenv("QUOTA_FAIL_OPEN", "true").strip().lower() not in ("0", "false", "no", "off")


# =============================================================================
# APPLICATION SETUP
# =============================================================================

# In-memory usage counters (replace the store with a database-backed one in production)
enforcer = UsageQuotaEnforcer(tz=ZoneInfo(USAGE_TIMEZONE), fail_open=QUOTA_FAIL_OPEN)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        "REPT calculators starting up (timezone=%s, quota fail-%s)",
        USAGE_TIMEZONE, "open" if QUOTA_FAIL_OPEN else "closed"
    )
    yield
    logger.info("REPT calculators shutting down...")


app = FastAPI(
    title="REPT Calculators",
    description="Portuguese real-estate cost calculators",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_enforcer() -> UsageQuotaEnforcer:
    return enforcer


def get_calculator_type(calculator_type: str) -> CalculatorType:
    """Resolve a path segment or raise 404."""
    try:
        return CalculatorType(calculator_type)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Calculator {calculator_type} not found")


def tier_from_header(tier: Optional[str], user_id: Optional[str]) -> Tier:
    """Tier header wins; otherwise signed-in users are free and everyone else anonymous."""
    if tier:
        resolved = resolve_tier(tier)
        if resolved.value != tier.strip().lower():
            logger.info("Unknown tier header %r, treating caller as anonymous", tier)
        return resolved
    return Tier.FREE if user_id else Tier.ANONYMOUS


def client_ip(request: Request, forwarded_for: Optional[str]) -> Optional[str]:
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def resolve_caller(
    request: Request,
    user_id: Optional[str],
    session_id: Optional[str],
    forwarded_for: Optional[str]
) -> str:
    """Caller key or raise 400."""
    try:
        return caller_key(user_id, session_id, client_ip(request, forwarded_for))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, int((moment - now).total_seconds()))


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    """API health check."""
    return {
        "service": "REPT Calculators",
        "version": "1.0.0",
        "status": "healthy",
    }


@app.get("/api/health")
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "calculators": "ready",
            "validation": "ready",
            "usage_quota": "fail-open" if enforcer.fail_open else "fail-closed",
        }
    }


# --- REFERENCE ENDPOINTS ---

@app.get("/api/reference/regions")
async def get_regions():
    """Supported regions and their informational data."""
    return [region.model_dump(mode="json") for region in DEFAULT_MARKET_DATA.regions]


@app.get("/api/reference/market-data")
async def get_market_data():
    """Every rate and fixed fee the calculators use."""
    return DEFAULT_MARKET_DATA.model_dump(mode="json")


@app.get("/api/calculators")
async def list_calculators(tier: Optional[str] = None):
    """Calculator catalogue, with access flags when a tier is given."""
    current = tier_from_header(tier, None) if tier else None
    calculators = []
    for calculator_type, info in CALCULATOR_CATALOGUE.items():
        entry = info.model_dump(mode="json")
        if current is not None:
            entry["has_access"] = check_tier_access(calculator_type, current).has_access
        calculators.append(entry)
    return calculators


# --- CALCULATOR ENDPOINTS ---

@app.post("/api/calculators/{calculator_type}/validate")
async def validate_inputs(calculator_type: str, data: Dict[str, Any] = Body(...)):
    """Validate inputs without running or metering a calculation."""
    kind = get_calculator_type(calculator_type)
    return validate(kind, data).model_dump()


@app.post("/api/calculators/{calculator_type}/calculate")
async def run_calculation(
    calculator_type: str,
    request: Request,
    data: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
    x_user_tier: Optional[str] = Header(default=None),
    x_forwarded_for: Optional[str] = Header(default=None),
    quota: UsageQuotaEnforcer = Depends(get_enforcer),
):
    """Validate, check access and quota, then calculate."""
    kind = get_calculator_type(calculator_type)
    key = resolve_caller(request, x_user_id, x_session_id, x_forwarded_for)
    tier = tier_from_header(x_user_tier, x_user_id)

    # Step 1: Validation (never consumes quota)
    validation = validate(kind, data)
    if not validation.is_valid:
        logger.info("Rejected %s input from %s: %s", kind.value, key, sorted(validation.errors))
        raise HTTPException(status_code=422, detail=validation.model_dump())

    # Step 2: Tier access
    access = check_tier_access(kind, tier)
    if not access.has_access:
        raise HTTPException(status_code=403, detail=access.model_dump(mode="json"))

    # Step 3: Quota
    decision = quota.check_and_consume(key, tier)
    if not decision.allowed:
        retry_after = decision.retry_after_seconds or seconds_until(decision.reset_time, quota.clock())
        detail = decision.model_dump(mode="json")
        detail["message"] = enforcement_message(decision)
        raise HTTPException(
            status_code=429,
            detail=detail,
            headers={"Retry-After": str(retry_after)},
        )

    # Step 4: Calculation
    result = calculate(kind, data)

    return {
        "result": result.model_dump(mode="json"),
        "warnings": validation.warnings,
        "usage": decision.model_dump(mode="json"),
        "usage_warning": usage_warning(decision).model_dump(),
        "message": enforcement_message(decision),
    }


# --- USAGE ENDPOINTS ---

@app.post("/api/usage/check")
async def check_usage(
    request: Request,
    calculations_this_week: Optional[int] = Query(default=None, ge=0),
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
    x_user_tier: Optional[str] = Header(default=None),
    x_forwarded_for: Optional[str] = Header(default=None),
    quota: UsageQuotaEnforcer = Depends(get_enforcer),
):
    """Current usage status without consuming a calculation."""
    key = resolve_caller(request, x_user_id, x_session_id, x_forwarded_for)
    decision = quota.peek(key, tier_from_header(x_user_tier, x_user_id))
    return {
        "usage": decision.model_dump(mode="json"),
        "usage_warning": usage_warning(decision).model_dump(),
        "upgrade": upgrade_recommendations(
            decision,
            calculations_today=decision.used,
            calculations_this_week=decision.used if calculations_this_week is None else calculations_this_week,
        ).model_dump(mode="json"),
        "message": enforcement_message(decision),
    }


@app.post("/api/admin/usage/sweep")
async def sweep_usage(
    x_admin_token: Optional[str] = Header(default=None),
    quota: UsageQuotaEnforcer = Depends(get_enforcer),
):
    """Daily reset sweep, for a scheduler to call after midnight."""
    admin_token = os.getenv("ADMIN_TOKEN")
    if not admin_token:
        raise HTTPException(status_code=404, detail="Not found")
    if x_admin_token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    try:
        reset_count = quota.daily_sweep()
    except UsageStoreError as e:
        logger.error(f"Usage sweep failed: {e}")
        raise HTTPException(status_code=503, detail="Usage store unavailable")

    return {"reset": reset_count, "timestamp": datetime.now(timezone.utc).isoformat()}


# --- ERROR HANDLERS ---

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if os.getenv("DEBUG") else "An error occurred"
        }
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
