"""FastAPI dependencies: gateway lookup, API key extraction, admission."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from starlette.requests import HTTPConnection

    from src.gate.admission import Admission
    from src.gateway import Gateway


def get_gateway(conn: HTTPConnection) -> Gateway:
    """The Gateway owned by the running application."""
    gateway: Gateway = conn.app.state.gateway
    return gateway


def extract_api_key(conn: HTTPConnection) -> str | None:
    """API key from X-API-Key, xi-api-key, Bearer token or ?api_key= (in that order)."""
    headers = conn.headers
    for name in ("X-API-Key", "xi-api-key"):
        value = headers.get(name)
        if value:
            return value

    auth_header = headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:] or None

    return conn.query_params.get("api_key") or conn.query_params.get("key") or None


async def require_admission(request: Request) -> Admission:
    """FastAPI dependency: run the auth / rate-limit gate for this request."""
    admission = await get_gateway(request).gate.admit(extract_api_key(request))
    request.state.admission = admission
    request.state.key_id = admission.key_id
    return admission


async def require_admin(request: Request) -> Admission:
    """FastAPI dependency: administrative callers only."""
    admission = await get_gateway(request).gate.admit_admin(extract_api_key(request))
    request.state.admission = admission
    request.state.key_id = admission.key_id
    return admission


def rate_limit_headers(admission: Admission) -> dict[str, str]:
    """X-RateLimit-* headers for an admitted, rate-limited key."""
    result = admission.rate_limit
    if result is None:
        return {}
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
