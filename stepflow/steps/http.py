"""HTTP Request step backed by httpx.AsyncClient.

Config:
    endpoint: absolute URL (required)
    httpMethod: defaults to POST when a body is given, GET otherwise
    httpHeaders / httpQueryParams / httpBody: objects or JSON strings
    ignoreHttpErrors: return non-2xx responses instead of failing

Output: ``{"status", "ok", "headers", "data"}`` where ``data`` is decoded JSON
when the response says so, else text.
"""

import json
import logging
from typing import Any

import httpx

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import load_json_maybe

logger = logging.getLogger(__name__)

MAX_ERROR_BODY_CHARS = 500


def _as_mapping(value: Any, name: str) -> dict[str, Any]:
    value = load_json_maybe(value)
    if value in (None, ""):
        return {}
    if not isinstance(value, dict):
        raise StepExecutionError(f"{name} must be an object or a JSON object string")
    return value


def _decode(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


async def http_request_step(
    payload: dict[str, Any],
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    endpoint = payload.get("endpoint")
    if not endpoint or not isinstance(endpoint, str):
        raise StepExecutionError("HTTP request failed: 'endpoint' is required")

    headers = {str(k): str(v) for k, v in _as_mapping(payload.get("httpHeaders"), "httpHeaders").items()}
    params = {
        k: v
        for k, v in _as_mapping(payload.get("httpQueryParams"), "httpQueryParams").items()
        if v is not None
    }

    body = load_json_maybe(payload.get("httpBody"))
    if body in ("", {}, []):
        body = None
    method = str(payload.get("httpMethod") or ("POST" if body is not None else "GET")).upper()
    if method == "GET":
        body = None

    request_kwargs: dict[str, Any] = {"headers": headers, "params": params}
    if isinstance(body, (dict, list)):
        request_kwargs["json"] = body
    elif body is not None:
        request_kwargs["content"] = body if isinstance(body, str) else json.dumps(body)

    logger.debug(f"HTTP {method} {endpoint}")
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(method, endpoint, **request_kwargs)
    except httpx.TimeoutException as e:
        raise StepExecutionError(f"HTTP request timed out after {timeout}s: {e}") from e
    except httpx.HTTPError as e:
        raise StepExecutionError(f"HTTP request failed: {e}") from e

    if not response.is_success and not payload.get("ignoreHttpErrors"):
        raise StepExecutionError(
            f"HTTP request failed with status {response.status_code}: "
            f"{response.text[:MAX_ERROR_BODY_CHARS]}"
        )

    return {
        "status": response.status_code,
        "ok": response.is_success,
        "headers": dict(response.headers),
        "data": _decode(response),
    }
