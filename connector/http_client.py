"""Shared HTTP plumbing for external collaborators.

Provides an OAuth2-authenticated ``requests`` session with urllib3 retries,
a bounded per-request timeout and structured error reporting. Concrete
clients (calendar, FHIR, SMS) subclass :class:`OAuthHTTPClient` or reuse
:func:`build_session`.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__all__ = [
    "ConnectorAPIError",
    "ConnectorAuthError",
    "ConnectorError",
    "OAuthHTTPClient",
    "TokenData",
    "build_session",
]

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS = 60
DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
RETRY_STATUSES = (429, 500, 502, 503, 504)


class ConnectorError(RuntimeError):
    """Base exception for collaborator client errors."""


class ConnectorAuthError(ConnectorError):
    """Raised when OAuth2 authentication fails."""


class ConnectorAPIError(ConnectorError):
    """Raised when a collaborator returns an error response."""


@dataclass(frozen=True)
class TokenData:
    """Container for OAuth2 token information."""

    access_token: str
    expires_at: datetime

    def is_valid(self, buffer_seconds: int) -> bool:
        """Check if the token is still valid with a refresh buffer."""

        return datetime.now(timezone.utc) + timedelta(seconds=buffer_seconds) < self.expires_at


def build_session(
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    allowed_methods: Tuple[str, ...] = ("GET", "PUT", "PATCH", "DELETE", "OPTIONS"),
) -> requests.Session:
    session = requests.Session()
    retry_strategy = Retry(
        total=max_retries,
        read=max_retries,
        connect=max_retries,
        status=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=allowed_methods,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class OAuthHTTPClient:
    """Bearer-token HTTP client with cached, lock-guarded token refresh.

    Subclasses choose the grant by overriding :meth:`_token_request_payload`.
    When ``access_token`` is passed directly no refresh is attempted.
    """

    service_name = "collaborator"

    def __init__(
        self,
        *,
        base_url: str,
        token_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        token_refresh_buffer: int = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")
        if not token_url and not access_token:
            raise ValueError("token_url or access_token must be provided")

        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.timeout = timeout
        self.token_refresh_buffer = token_refresh_buffer

        self._session = session or build_session(max_retries=max_retries, backoff_factor=backoff_factor)
        self._token_lock = threading.Lock()
        self._static_token = access_token
        self._token: Optional[TokenData] = None

    def _token_request_payload(self) -> Dict[str, str]:
        raise NotImplementedError

    def _get_access_token(self) -> str:
        if self._static_token:
            return self._static_token

        token = self._token
        if token and token.is_valid(self.token_refresh_buffer):
            return token.access_token

        with self._token_lock:
            token = self._token
            if token and token.is_valid(self.token_refresh_buffer):
                return token.access_token

            logger.debug("Refreshing %s OAuth2 token", self.service_name)
            try:
                response = self._session.post(
                    self.token_url, data=self._token_request_payload(), timeout=self.timeout
                )
                response.raise_for_status()
                data = response.json()
            except requests.RequestException as exc:
                logger.error("Failed to obtain %s token: %s", self.service_name, exc)
                raise ConnectorAuthError(f"Failed to obtain {self.service_name} token") from exc
            except ValueError as exc:
                logger.error("Invalid token response received from %s: %s", self.service_name, exc)
                raise ConnectorAuthError(f"Invalid token response from {self.service_name}") from exc

            access_token = data.get("access_token")
            expires_in = data.get("expires_in")
            if not access_token or not isinstance(access_token, str):
                raise ConnectorAuthError("Token response missing access_token")
            if not expires_in:
                logger.warning("Token response missing expires_in; defaulting to 5 minutes")
                expires_in = 300

            try:
                expires_in_int = int(expires_in)
            except (TypeError, ValueError) as exc:
                raise ConnectorAuthError("Invalid expires_in value in token response") from exc

            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in_int)
            self._token = TokenData(access_token=access_token, expires_at=expires_at)
            logger.info("%s token refreshed; expires at %s", self.service_name, expires_at.isoformat())
            return access_token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        expected_status: Union[int, Tuple[int, ...]] = (200,),
    ) -> Response:
        if not path:
            raise ValueError("path must be provided")
        if isinstance(expected_status, int):
            expected_status = (expected_status,)

        token = self._get_access_token()
        url = f"{self.base_url}/{path.lstrip('/')}"
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json_payload,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Request to %s failed: %s", self.service_name, exc)
            raise ConnectorAPIError(f"Failed to execute request to {self.service_name}") from exc

        if response.status_code not in expected_status:
            self._log_error_response(response)
            raise ConnectorAPIError(
                f"{self.service_name} responded with unexpected status {response.status_code}: {response.text}"
            )

        return response

    def _log_error_response(self, response: Response) -> None:
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                parsed = response.json()
                logger.error("%s error response: status=%s body=%s", self.service_name, response.status_code, parsed)
                return
            except ValueError:
                pass
        logger.error(
            "%s error response: status=%s body=%s", self.service_name, response.status_code, response.text[:2048]
        )
