import hashlib
import hmac
import re
import uuid

from app.core.exceptions import BadRequestError

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{8,128}$")


def generate_request_id() -> str:
    return str(uuid.uuid4())


def normalize_request_id(request_id: str | None) -> str:
    """Return the caller-supplied request id (trimmed) or a fresh one."""
    if request_id is None or not request_id.strip():
        return generate_request_id()
    value = request_id.strip()
    if not _REQUEST_ID_RE.match(value):
        raise BadRequestError("Invalid requestId", details={"request_id": value[:128]})
    return value


def require_device_id(device_id: str | None) -> str:
    if not device_id or not device_id.strip():
        raise BadRequestError("Missing X-Device-ID header")
    return device_id.strip()


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw body, compared in constant time."""
    if not signature:
        return False
    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())
