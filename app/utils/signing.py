import hashlib
import hmac
from typing import Union

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign_payload(secret: str, body: Union[str, bytes]) -> str:
    digest = hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: Union[str, bytes], signature: str) -> bool:
    """Receiver-side check: recompute over the raw body and compare in constant time."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)
