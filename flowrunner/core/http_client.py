"""Outbound HTTP calls for ``api_call`` action nodes."""

from typing import Dict, Optional
from urllib.parse import urlencode

import requests

from ..models.execution import ApiResponse
from ..models.graph import ApiConfig
from .logging import get_logger


logger = get_logger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")


def build_url(config: ApiConfig) -> str:
    """Append non-empty-keyed query parameters to the configured URL."""
    url = config.url
    params = [(pair.key, pair.value) for pair in config.query_params if pair.key]
    query = urlencode(params)
    if query:
        url += ("&" if "?" in url else "?") + query
    return url


def build_headers(config: ApiConfig) -> Dict[str, str]:
    headers = {pair.key: pair.value for pair in config.headers if pair.key}
    method = config.method.value
    if method in BODY_METHODS and config.body:
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"
    return headers


class ActionHttpClient:
    """Performs an action node's HTTP request and normalises the outcome.

    Transport failures never raise; they are returned as a response with
    ``status=0`` and the error message.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def execute(self, config: ApiConfig) -> ApiResponse:
        method = config.method.value
        url = build_url(config)
        headers = build_headers(config)
        body = config.body if method in BODY_METHODS and config.body else None

        logger.debug(f"Outbound request: {method} {url}")

        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                data=body.encode("utf-8") if body is not None else None,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Outbound request {method} {url} failed: {e}")
            return ApiResponse(status=0, status_text="Error", data=None, error=str(e))

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type.lower():
            try:
                data = response.json()
            except ValueError as e:
                return ApiResponse(
                    status=0,
                    status_text="Error",
                    data=None,
                    error=f"Invalid JSON response: {e}",
                )
        else:
            data = response.text

        return ApiResponse(
            status=response.status_code,
            status_text=response.reason or "",
            data=data,
        )

    def close(self):
        self.session.close()
