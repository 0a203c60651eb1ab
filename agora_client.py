"""Lightweight HTTP client for the Agora REST API."""

import base64  # For Basic Auth encoding
import time  # For retry backoff
from typing import Any, Dict, Optional

import requests  # For making HTTP requests

from agora_config import AgoraConfig

USER_AGENT = "fivetran-connector-sdk-agora/1.0"
CONNECTION_CHECK_PATH = "/dev/v1/projects"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRY_AFTER_SECONDS = 300


class TransportError(RuntimeError):
    """Raised when a request fails at the network level or returns a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AgoraClient:
    """
    Performs authenticated GET requests against the Agora API.
    Authentication headers are attached once on the session, so callers only deal with paths and query parameters.
    Transient failures (connection errors, timeouts, 429 and 5xx responses) are retried with exponential backoff.
    """

    def __init__(self, config: AgoraConfig, emitter=None, session: Optional[requests.Session] = None) -> None:
        token = base64.b64encode(
            f"{config.customer_id}:{config.customer_secret}".encode("utf-8")
        ).decode("ascii")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Basic {token}",
                "x-agora-appid": config.app_id,
                "x-agora-customerid": config.customer_id,
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            }
        )
        self.base_url = config.endpoint_url.rstrip("/")
        self.timeout = config.request_timeout_seconds
        self.retry_attempts = config.retry_attempts
        self.retry_delay_seconds = config.retry_delay_seconds
        self.emitter = emitter

    def _warn(self, message: str) -> None:
        if self.emitter is not None:
            self.emitter.warn(message)

    def _backoff_seconds(self, attempt: int, response: Optional[requests.Response] = None) -> float:
        """Honour Retry-After on throttled responses, otherwise back off exponentially."""
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                return min(int(retry_after), MAX_RETRY_AFTER_SECONDS)
        return self.retry_delay_seconds * (2**attempt)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform a GET request and return the parsed JSON body.
        Args:
            path: API path relative to the endpoint URL, e.g. '/v1/events'.
            params: query parameters to send with the request.
        Returns:
            The decoded JSON body. An empty body is returned as an empty dictionary.
        Raises:
            TransportError: if the request still fails after all retry attempts, or the body is not JSON.
        """
        url = f"{self.base_url}{path}"

        for attempt in range(self.retry_attempts + 1):
            can_retry = attempt < self.retry_attempts
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if not can_retry:
                    raise TransportError(
                        f"GET {path} failed after {self.retry_attempts + 1} attempts: {str(e)}"
                    ) from e
                delay = self._backoff_seconds(attempt)
                self._warn(
                    f"GET {path} failed (attempt {attempt + 1}/{self.retry_attempts + 1}): {str(e)}. Retrying in {delay}s"
                )
                time.sleep(delay)
                continue
            except requests.exceptions.RequestException as e:
                raise TransportError(f"GET {path} failed: {str(e)}") from e

            if response.status_code in RETRYABLE_STATUS_CODES and can_retry:
                delay = self._backoff_seconds(attempt, response)
                self._warn(
                    f"GET {path} returned HTTP {response.status_code} (attempt {attempt + 1}/{self.retry_attempts + 1}). Retrying in {delay}s"
                )
                time.sleep(delay)
                continue

            if not 200 <= response.status_code < 300:
                raise TransportError(
                    f"GET {path} returned HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise TransportError(f"GET {path} returned a body that is not valid JSON") from e

        # Every branch of the last attempt returns or raises
        raise TransportError(f"GET {path} failed after {self.retry_attempts + 1} attempts")

    def check_connection(self) -> bool:
        """
        Verify that the credentials are accepted by the API.
        Returns:
            True when the projects endpoint answers successfully.
        Raises:
            TransportError: when the API cannot be reached or rejects the credentials.
        """
        self.get(CONNECTION_CHECK_PATH)
        return True
