from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import Header, HTTPException, status

from asset_studio.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_webhook_signature(*, secret: str, body: bytes | str) -> str:
    payload = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(*, secret: str, body: bytes | str, supplied_signature: str | None) -> bool:
    if not supplied_signature:
        return False
    received = supplied_signature.strip()
    if received.startswith(SIGNATURE_PREFIX):
        received = received[len(SIGNATURE_PREFIX):]
    expected = compute_webhook_signature(secret=secret, body=body)[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected, received)


def check_webhook_signature(*, secret: str | None, body: bytes | str, supplied_signature: str | None) -> bool:
    """Verify a webhook delivery, accepting everything when no secret is configured."""
    if not secret:
        log = logger.error if settings.is_production else logger.warning
        log("REPLICATE_WEBHOOK_SECRET not configured; accepting unsigned webhook")
        return True
    try:
        return verify_webhook_signature(secret=secret, body=body, supplied_signature=supplied_signature)
    except Exception as exc:
        logger.warning("Error validating webhook signature: %s", exc)
        return False


def require_internal_api_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    expected = settings.ASSET_STUDIO_INTERNAL_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ASSET_STUDIO_INTERNAL_API_TOKEN is not configured",
        )
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer authorization header",
        )
    token = authorization[7:].strip()
    if not hmac.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal API token",
        )
