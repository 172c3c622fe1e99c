"""
Webhook signature primitives shared by the gateway adapters.

Providers sign a string derived from the payload, never the JSON text itself,
so values are rendered the way the providers' own (JavaScript) reference
implementations render them: ``true``/``false`` for booleans, integral
numbers without a trailing ``.0``, nested structures as compact JSON.
"""
import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Mapping, Union

_EMPTY_MARKERS = (None, "null", "undefined")


def hmac_sha256_hex(secret: str, canonical: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def signatures_match(expected: str, supplied: Any) -> bool:
    """Constant-time comparison; anything that is not a string never matches."""
    if not isinstance(supplied, str) or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def _normalize(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(_normalize(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(_normalize(value))


def sorted_query_string(data: Mapping[str, Any]) -> str:
    """Alphabetically sorted ``key=value&...`` string (PayOS checksum input)."""
    parts = []
    for key in sorted(data):
        value = data[key]
        if isinstance(value, str) and value in _EMPTY_MARKERS:
            value = None
        parts.append(f"{key}={canonical_value(value)}")
    return "&".join(parts)


def decode_side_channel(blob: Union[str, bytes, None]) -> dict:
    """Decode a side-channel blob carrying routing data such as the booking id.

    Accepts base64-encoded JSON (MoMo ``extraData``) as well as plain JSON
    (ZaloPay ``embed_data``). Anything undecodable yields an empty dict.
    """
    if not blob:
        return {}
    if isinstance(blob, bytes):
        blob = blob.decode("utf-8", errors="replace")
    try:
        decoded = json.loads(blob)
    except ValueError:
        try:
            decoded = json.loads(base64.b64decode(blob, validate=True).decode("utf-8"))
        except (binascii.Error, ValueError):
            return {}
    return decoded if isinstance(decoded, dict) else {}


def encode_side_channel(data: Mapping[str, Any]) -> str:
    return base64.b64encode(json.dumps(dict(data), separators=(",", ":")).encode("utf-8")).decode("ascii")


def payload_excerpt(raw: Union[bytes, str], limit: int = 200) -> str:
    """Truncated payload text for audit log lines."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    return text if len(text) <= limit else text[:limit] + "..."
