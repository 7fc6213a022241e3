"""
GARM API client for the GARM runner controller.

Thin async wrapper around the GARM REST API. Every call takes the bearer
token explicitly; token lifecycle and re-authentication live in
:mod:`garm_runner_controller.utils.session`. Failures are raised as
exceptions classified by whether the token was rejected.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from ..models.runner import Runner

API_BASE_PATH = "/api/v1"


class GarmError(Exception):
    """Base class for GARM access errors."""
    pass


class GarmAuthenticationError(GarmError):
    """Raised when init or login against GARM fails."""
    pass


class GarmUpstreamError(GarmError):
    """Raised when a GARM call fails for a reason other than an expired token."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class GarmUnauthorizedError(GarmUpstreamError):
    """Raised when GARM rejects the bearer token (HTTP 401)."""

    def __init__(self, message: str = "GARM rejected the bearer token") -> None:
        super().__init__(message, status_code=401)


class GarmCancelledError(GarmError):
    """Raised when a caller deadline expires before a GARM call completes."""
    pass


class GarmClient:
    """
    Async client for the GARM REST API.

    One instance is shared by all callers; the underlying
    ``httpx.AsyncClient`` is created lazily and reused.
    """

    def __init__(self,
                 base_url: str,
                 tls_verify: bool = True,
                 timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 logger: Any = None) -> None:
        """
        Initialize the GARM client.

        Args:
            base_url: GARM server URL, without the API path
            tls_verify: Whether to verify TLS certificates
            timeout: Per-request timeout in seconds
            transport: Optional transport, used to stub the server in tests
            logger: Structured logger instance
        """
        self.logger = (logger or structlog.get_logger()).bind(component="garm_client")
        self.base_url = base_url.rstrip("/")
        self.tls_verify = tls_verify
        self.timeout = timeout

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.tls_verify:
                self.logger.warning("TLS verification disabled - not recommended for production")
            self._client = httpx.AsyncClient(
                base_url=self.base_url + API_BASE_PATH,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={
                    "User-Agent": "garm-runner-controller/0.1.0",
                    "Accept": "application/json",
                },
                verify=self.tls_verify,
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def _request(self,
                       method: str,
                       path: str,
                       token: Optional[str] = None,
                       json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        Perform one request and classify failures.

        Raises:
            GarmUnauthorizedError: If GARM answered 401
            GarmUpstreamError: On any other error status or transport failure
        """
        headers = {}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._http().request(method, path, headers=headers, json=json)
        except httpx.HTTPError as e:
            self.logger.warning("GARM request failed", method=method, path=path, error=str(e))
            raise GarmUpstreamError(f"{method} {path} failed: {e}") from e

        self.logger.debug(
            "GARM API request",
            method=method,
            path=path,
            status_code=response.status_code
        )

        if response.status_code == 401:
            raise GarmUnauthorizedError()
        if response.status_code >= 400:
            raise GarmUpstreamError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )
        return response

    def _decode(self, response: httpx.Response, expected: type) -> Any:
        """
        Parse a JSON body of the ``expected`` type.

        An empty body or JSON ``null`` decodes to an empty ``expected``.

        Raises:
            GarmUpstreamError: If the body is not JSON of that type
        """
        try:
            payload = response.json() if response.content else None
        except ValueError as e:
            raise self._invalid_response(response, e) from e

        if payload is None:
            return expected()
        if not isinstance(payload, expected):
            error = f"expected {expected.__name__}, got {type(payload).__name__}"
            raise self._invalid_response(response, error)
        return payload

    def _parse_runners(self, response: httpx.Response) -> List[Runner]:
        items = self._decode(response, list)
        try:
            return [Runner.model_validate(item) for item in items]
        except ValidationError as e:
            raise self._invalid_response(response, e) from e

    def _invalid_response(self, response: httpx.Response, error: Any) -> GarmUpstreamError:
        request = response.request
        self.logger.warning(
            "Invalid GARM response",
            method=request.method,
            path=request.url.path,
            error=str(error)
        )
        return GarmUpstreamError(
            f"{request.method} {request.url.path}: invalid response: {error}",
            status_code=response.status_code
        )

    async def first_run(self, username: str, password: str, email: str) -> None:
        """
        Bootstrap the GARM admin user.

        Idempotent: a server that is already initialized answers 409, which
        is treated as success.
        """
        body = {"username": username, "password": password, "email": email}
        try:
            response = await self._request("POST", "/first-run/", json=body)
        except GarmUpstreamError as e:
            if e.is_conflict:
                self.logger.info("GARM is already initialized")
                return
            raise GarmAuthenticationError(f"failed to initialize GARM: {e}") from e

        # the created user is only logged
        try:
            user = self._decode(response, dict)
        except GarmUpstreamError:
            user = {}
        self.logger.info(
            "GARM initialized",
            user_id=user.get("id"),
            username=user.get("username"),
            email=user.get("email")
        )

    async def login(self, username: str, password: str) -> str:
        """
        Exchange credentials for a bearer token.

        Raises:
            GarmAuthenticationError: If GARM refuses the credentials or the
                response carries no token
        """
        body = {"username": username, "password": password}
        try:
            response = await self._request("POST", "/auth/login", json=body)
        except GarmUpstreamError as e:
            raise GarmAuthenticationError(f"failed to login to GARM: {e}") from e

        try:
            token = self._decode(response, dict).get("token")
        except GarmUpstreamError as e:
            raise GarmAuthenticationError(f"failed to login to GARM: {e}") from e
        if not token:
            raise GarmAuthenticationError("login response carries no token")
        return token

    async def list_pool_instances(self, pool_id: str, token: str) -> List[Runner]:
        response = await self._request("GET", f"/pools/{quote(pool_id, safe='')}/instances", token=token)
        return self._parse_runners(response)

    async def list_instances(self, token: str) -> List[Runner]:
        response = await self._request("GET", "/instances", token=token)
        return self._parse_runners(response)

    async def get_instance(self, name: str, token: str) -> Runner:
        response = await self._request("GET", f"/instances/{quote(name, safe='')}", token=token)
        try:
            return Runner.model_validate(self._decode(response, dict))
        except ValidationError as e:
            raise self._invalid_response(response, e) from e

    async def delete_instance(self, name: str, token: str) -> None:
        """Delete a runner instance. An instance that is already gone counts as deleted."""
        try:
            await self._request("DELETE", f"/instances/{quote(name, safe='')}", token=token)
        except GarmUnauthorizedError:
            raise
        except GarmUpstreamError as e:
            if not e.is_not_found:
                raise
            self.logger.info("Runner already deleted", runner=name)

    async def list_pools(self, token: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/pools", token=token)
        return self._decode(response, list)

    async def get_pool(self, pool_id: str, token: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/pools/{quote(pool_id, safe='')}", token=token)
        return self._decode(response, dict)

    async def close(self) -> None:
        """Close client connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self.logger.debug("GARM client closed")
