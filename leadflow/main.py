# leadflow/main.py
import logging
import time
from collections import defaultdict
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from leadflow import config
from leadflow.db import create_db_and_tables
from leadflow.deps import get_tenant_id
from leadflow.errors import ConfigurationError, NotFoundError
from leadflow.logging_config import setup_logging

# Routers
from leadflow.routers.conversations import router as conversations_router
from leadflow.routers.cron import router as cron_router
from leadflow.routers.debug import router as debug_router
from leadflow.routers.leads import router as leads_router
from leadflow.routers.reps import router as reps_router
from leadflow.routers.webhooks import router as webhooks_router

log = logging.getLogger("leadflow.main")

app = FastAPI(title="Leadflow - Lead Assignment & Outreach", version="0.1.0")


# ---------- helpers ----------
def _tenant_keys():
    return getattr(config.settings, "TENANT_KEYS", None) or {}


def _debug_bearer():
    return (config.settings.DEBUG_BEARER or "").strip()


def _tenant_for(request: Request) -> str:
    x_api_key = (request.headers.get("x-api-key") or "").strip()
    tenant_key_qs = (request.query_params.get("tenant_key") or "").strip()
    return _tenant_keys().get(x_api_key or tenant_key_qs, "public")


# ---------- Tenant middleware ----------
@app.middleware("http")
async def tenant_middleware(request: Request, call_next):
    request.state.tenant_id = _tenant_for(request)
    return await call_next(request)


# ---------- Protect ONLY /debug/* ----------
@app.middleware("http")
async def debug_auth_middleware(request: Request, call_next):
    path = request.url.path
    if path.startswith("/debug/") or path == "/debug":
        if request.method == "OPTIONS":
            return await call_next(request)

        expected = _debug_bearer()
        auth = (request.headers.get("authorization") or "").strip()
        x_api_key = (request.headers.get("x-api-key") or "").strip()

        bearer_ok = bool(expected) and auth.lower().startswith("bearer ") and auth[7:].strip() == expected
        key_ok = bool(x_api_key) and (x_api_key in _tenant_keys())

        if not (bearer_ok or key_ok):
            log.warning("debug guard refused %s %s", request.method, path)
            return JSONResponse({"detail": "Unauthorized"}, status_code=401)

    return await call_next(request)


# ---------- Simple per-tenant rate limiting ----------
RATE_LIMITS = {"lead": 30, "twilio_sms": 120, "facebook": 60, "vapi": 120}
_RATE_COUNTS = defaultdict(int)


def _bucket_for_path(path: str) -> Optional[str]:
    if path == "/leads":
        return "lead"
    if path == "/webhooks/twilio/sms":
        return "twilio_sms"
    if path == "/webhooks/facebook":
        return "facebook"
    if path == "/webhooks/vapi":
        return "vapi"
    return None


@app.middleware("http")
async def per_tenant_rate_limit(request: Request, call_next):
    bucket = _bucket_for_path(request.url.path)
    if not bucket or request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return await call_next(request)

    # outermost middleware: runs before tenant_middleware has set request.state
    tenant_id = _tenant_for(request)
    limit = RATE_LIMITS.get(bucket, 0)
    if limit <= 0:
        return await call_next(request)

    minute_window = int(time.time() // 60)
    key = (tenant_id, bucket, minute_window)
    _RATE_COUNTS[key] += 1
    if _RATE_COUNTS[key] > limit:
        log.warning("Rate limit hit tenant=%s bucket=%s", tenant_id, bucket)
        return JSONResponse({"detail": f"Rate limit exceeded for tenant '{tenant_id}' on {bucket}"}, status_code=429)
    return await call_next(request)


# ---------- Error mapping ----------
@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    log.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse({"detail": f"Server misconfigured: {exc}"}, status_code=500)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse({"detail": str(exc) or "Not found"}, status_code=404)


# ---------- Simple health/root ----------
@app.get("/")
def root():
    return {"ok": True, "msg": "root alive"}


@app.get("/health")
def health():
    return {"ok": True, "env": config.settings.ENV}


# ---------- Routers ----------
# Require tenant on these
app.include_router(leads_router, dependencies=[Depends(get_tenant_id)])
app.include_router(reps_router, dependencies=[Depends(get_tenant_id)])
app.include_router(conversations_router, dependencies=[Depends(get_tenant_id)])

# Provider callbacks / cron (own auth) and debug (middleware-guarded)
app.include_router(webhooks_router)
app.include_router(cron_router)
app.include_router(debug_router)


# ---------- Startup ----------
@app.on_event("startup")
def on_startup():
    setup_logging()
    create_db_and_tables()
    log.info("Leadflow started (env=%s)", config.settings.ENV)
