"""http_utils.py — API Gateway plumbing for the config API: JSON responses, error envelopes, request parsing, internal-key auth.
"""
from __future__ import annotations

import base64
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from cfn_deployer import config

__all__ = [
    "INTERNAL_KEY_HEADER",
    "_authorize_internal",
    "_error",
    "_json_body",
    "_path_method",
    "_response",
]

INTERNAL_KEY_HEADER = "X-Deployer-Internal-Key"

_DEFAULT_ERROR_CODES = {
    400: "INVALID_INPUT",
    401: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "CONFLICT",
}


def _encode(obj: Any) -> Any:
    # Records read back through TypeDeserializer may still carry Decimals.
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def _response(status_code: int, payload: Any) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(payload, default=_encode),
    }


def _error(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    retryable: Optional[bool] = None,
    **details: Any,
) -> Dict[str, Any]:
    """Failure response: ``{success: false, error, error_envelope{code, message, retryable, details}}``."""
    envelope = {
        "code": (code or _DEFAULT_ERROR_CODES.get(status_code, "INTERNAL_ERROR")).upper(),
        "message": message,
        "retryable": status_code >= 500 if retryable is None else bool(retryable),
        "details": details,
    }
    return _response(status_code, {"success": False, "error": message, "error_envelope": envelope})


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Request body as a dict. Empty bodies are ``{}``; anything else non-object is a ValueError."""
    raw = event.get("body")
    if not raw:
        return {}
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("JSON body must be an object")
    return parsed


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    # HTTP API (v2) payloads carry requestContext.http; REST (v1) ones carry httpMethod.
    http = (event.get("requestContext") or {}).get("http") or {}
    method = str(http.get("method") or event.get("httpMethod") or "").upper()
    return method, event.get("rawPath") or event.get("path") or "/"


def _authorize_internal(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """None when the request carries a configured internal key, else a 401 response."""
    headers = {str(k).lower(): v for k, v in (event.get("headers") or {}).items()}
    supplied = str(headers.get(INTERNAL_KEY_HEADER.lower()) or "")
    if supplied and any(hmac.compare_digest(supplied, key) for key in config.INTERNAL_API_KEYS):
        return None
    return _error(401, f"Missing or invalid {INTERNAL_KEY_HEADER} header.")
