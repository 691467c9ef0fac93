# leadflow/deps.py
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Query, Request

from leadflow import config

log = logging.getLogger(__name__)


def _tenant_keys() -> dict:
    return getattr(config.settings, "TENANT_KEYS", None) or {}


def _tenant_from_key(key: Optional[str]) -> Optional[str]:
    if not key:
        return None
    return _tenant_keys().get(key.strip())


async def get_tenant_id(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    tenant_key: Optional[str] = Query(None),
) -> str:
    # 1) Prefer explicit key (header or query)
    tenant = _tenant_from_key(x_api_key or tenant_key)

    # 2) Fallback: middleware-populated request.state.tenant_id
    if not tenant:
        state_tenant = getattr(request.state, "tenant_id", None)
        if state_tenant and state_tenant != "public":
            tenant = state_tenant

    if not tenant:
        raise HTTPException(status_code=401, detail="Missing or unknown tenant key")
    return tenant


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Cron endpoints: Authorization: Bearer <CRON_SECRET>.
    Refuse everything when no secret is configured.
    """
    expected = (config.settings.CRON_SECRET or "").strip()
    if not expected:
        log.error("CRON_SECRET not configured; refusing cron request")
        raise HTTPException(status_code=500, detail="Server misconfigured: CRON_SECRET not set")

    auth = (authorization or "").strip()
    got = auth[7:].strip() if auth.lower().startswith("bearer ") else ""
    if not got or not hmac.compare_digest(got, expected):
        raise HTTPException(status_code=401, detail="Unauthorized: missing or invalid cron secret")
