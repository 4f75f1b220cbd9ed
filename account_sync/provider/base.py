"""
Base HTTP client for the identity provider's REST API.

This module holds the transport pieces shared by provider clients: SSL
context setup, bearer authentication, JSON request/response handling, and the
structured error carrying the HTTP status that the executor maps to outcomes.
"""

import json
import ssl
import logging
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

logger = logging.getLogger(__name__)


class ProviderAPIError(Exception):
    """Raised when a provider API call fails.

    ``status_code`` is None for transport failures that never produced an
    HTTP response.
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None, body: Any = None):
        self.status_code = status_code
        self.retry_after = retry_after
        self.body = body
        super().__init__(message)


class ProviderAuthenticationError(ProviderAPIError):
    """Raised when the provider rejects the secret key."""
    pass


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth honouring over the configured cooldown
        return None


def _error_message(body: Any, fallback: str) -> str:
    """Pull a human-readable message out of a provider error body."""
    if isinstance(body, dict):
        errors = body.get('errors')
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                return first.get('long_message') or first.get('message') or fallback
        return body.get('message') or fallback
    return fallback


class ProviderAPIBase:
    """
    Common HTTP client functionality for the identity provider.

    Subclasses build the account operations on top of ``request``.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize provider API client.

        Args:
            config: Provider configuration dictionary (base_url, secret_key, timeout, verify_ssl)
        """
        self.config = config
        self.base_url = config['base_url']
        self.timeout = config.get('timeout', 30)
        self.verify_ssl = config.get('verify_ssl', True)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None

        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication(config.get('secret_key'))

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_file = self.config.get('ca_file')
        if ca_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_file)
                logger.info(f"Loaded CA bundle: {ca_file}")
            except (OSError, ssl.SSLError) as e:
                raise ProviderAPIError(f"CA bundle loading failed: {e}")

    def _setup_authentication(self, secret_key: Optional[str]):
        """Set up bearer authentication with the provider secret key."""
        if secret_key:
            self.auth_headers['Authorization'] = f"Bearer {secret_key}"
            logger.debug(f"Configured Bearer authentication for {self.host}")
        else:
            logger.error(f"No secret key configured for {self.host}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make HTTP request to the provider API.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: API endpoint path (relative to base_url)
            body: JSON request body
            params: Query string parameters; None values are dropped

        Returns:
            Decoded JSON response (empty dict for empty bodies)

        Raises:
            ProviderAuthenticationError: On 401
            ProviderAPIError: On any other failure, with status_code when available
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            query = urlencode({key: value for key, value in params.items() if value is not None})
            if query:
                full_path = f"{full_path}?{query}"

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()

            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            retry_after = _parse_retry_after(response.getheader('Retry-After'))
        except (ConnectionError, OSError, HTTPException) as e:
            # Connection is unusable after a transport failure or malformed response
            self.close_connection()
            raise ProviderAPIError(f"Connection error to {self.host}: {type(e).__name__}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        try:
            parsed = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            if response.status >= 400:
                parsed = {'raw': response_data}
            else:
                raise ProviderAPIError(f"Invalid JSON response from {self.host}: {e}",
                                       status_code=response.status)

        if response.status == 401:
            raise ProviderAuthenticationError(
                _error_message(parsed, f"Authentication failed for {self.host}"),
                status_code=401, body=parsed
            )
        if response.status >= 400:
            raise ProviderAPIError(
                _error_message(parsed, f"HTTP {response.status}: {response.reason}"),
                status_code=response.status, retry_after=retry_after, body=parsed
            )

        return parsed

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.host}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
