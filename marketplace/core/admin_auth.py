"""
Operator authentication for admin and internal endpoints.

Operators (and the order service calling the internal status hook) present
the shared secret in the X-Admin-Key header. The key is compared in constant
time; the actor identity recorded in logs is a short hash, never the key.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from marketplace.core.config import settings
from marketplace.core.errors import AppError, PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated operator."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_key() -> Optional[str]:
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor when the X-Admin-Key header matches, else None."""
    expected_key = get_admin_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require operator authentication.

    Usage:
        @router.post("/v1/admin/payouts/{payout_id}/complete")
        def complete(payout_id: str, actor: AdminActor = Depends(require_admin)):
            ...
    """
    if not get_admin_key():
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )

    actor = verify_admin_key(request)
    if actor is None:
        raise PermissionError("Invalid or missing admin credentials", code="admin_unauthorized")
    return actor
