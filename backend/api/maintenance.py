import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from db import get_memory_service
from runtime_state import runtime_state

_MCP_API_KEY_ENV = "MCP_API_KEY"
_MCP_API_KEY_HEADER = "X-MCP-API-Key"
_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_mcp_api_key() -> str:
    return str(os.getenv(_MCP_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def _auth_failure(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_maintenance_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=_MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_mcp_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key() and _is_loopback_request(request):
            return
        raise _auth_failure(
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )

    provided = str(x_mcp_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failure("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class ConsolidateRequest(BaseModel):
    threshold: Optional[float] = Field(default=None, ge=0.5, le=1.0)
    dry_run: bool = False


class DecayRequest(BaseModel):
    rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    force: bool = False


def _checked(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not payload.get("ok"):
        raise HTTPException(status_code=500, detail=payload)
    return payload


@router.post("/consolidate")
async def consolidate(body: ConsolidateRequest):
    service = get_memory_service()
    if body.dry_run:
        return await service.consolidate(body.threshold, dry_run=True)
    payload = await runtime_state.maintenance.run_pass(
        "consolidate",
        lambda: service.consolidate(body.threshold, dry_run=False),
        reason="api.maintenance",
    )
    return _checked(payload)


@router.post("/decay")
async def decay(body: DecayRequest):
    service = get_memory_service()
    payload = await runtime_state.maintenance.run_decay(
        lambda: service.apply_decay(body.rate),
        force=body.force,
        reason="api.maintenance",
    )
    return _checked(payload)


@router.post("/expired")
async def clear_expired():
    service = get_memory_service()
    payload = await runtime_state.maintenance.run_pass(
        "expired", service.clear_expired, reason="api.maintenance"
    )
    return _checked(payload)


@router.post("/index/rebuild")
async def rebuild_lexical_index():
    service = get_memory_service()
    payload = await runtime_state.maintenance.run_pass(
        "lexical_rebuild", service.rebuild_lexical, reason="api.maintenance"
    )
    return _checked(payload)


@router.post("/reconcile")
async def reconcile():
    service = get_memory_service()
    payload = await runtime_state.maintenance.run_pass(
        "reconcile", service.reconcile, reason="api.maintenance"
    )
    return _checked(payload)


@router.post("/cache/invalidate")
async def invalidate_cache():
    return await get_memory_service().invalidate_caches()


@router.get("/status")
async def maintenance_status():
    service = get_memory_service()
    return {
        "maintenance": await runtime_state.maintenance.status(),
        "notifications": runtime_state.notifications.status(),
        "lexical": service.lexical.stats(),
    }


@router.get("/embedding")
async def embedding_availability():
    return await get_memory_service().embedder.check_availability()
