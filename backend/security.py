from typing import Optional
from fastapi import Header, Request

from config import ADMIN_API_KEY, TRUSTED_PROXIES
from errors import Forbidden, MissingToken
import hmac

class InvalidAdminKey(Forbidden):
    code = "INVALID_ADMIN_KEY"
    status_code = 401
    message = "Invalid admin API key"

def verify_admin(x_api_key: str = Header(default="")):
    if not hmac.compare_digest(x_api_key.encode("utf-8"), ADMIN_API_KEY.encode("utf-8")):
        raise InvalidAdminKey()

def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the credential from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()

def require_token(authorization: Optional[str], query_token: Optional[str] = None) -> str:
    """Bearer header wins over ``?token=``.

    Raises:
        MissingToken: Neither was supplied.
    """
    token = bearer_token(authorization) or (query_token or "").strip()
    if not token:
        raise MissingToken()
    return token

def caller_ip(request: Request) -> str:
    """Client address for rate limiting.

    Forwarded headers are only honoured when the socket peer is a trusted
    proxy; X-Forwarded-For is walked right to left and the first hop that is
    not itself a trusted proxy wins. Otherwise the peer address is used.
    """
    peer = request.client.host if request.client else "unknown"
    if peer not in TRUSTED_PROXIES:
        return peer
    hops = [h.strip() for h in (request.headers.get("x-forwarded-for") or "").split(",") if h.strip()]
    for hop in reversed(hops):
        if hop not in TRUSTED_PROXIES:
            return hop
    if hops:
        return hops[0]
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    return real_ip or peer
