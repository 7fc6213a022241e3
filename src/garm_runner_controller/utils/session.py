"""
Authenticated GARM session.

GARM issues bearer tokens without an advertised lifetime, so the only sign
of expiry is a rejected call. :class:`GarmSession` owns the token, wraps
every GARM call, and on a 401 logs in again and retries the call once.

One session is shared by all alignment workers. Re-login is single-flight:
concurrent callers that see the token rejected await the same login task
instead of each logging in.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import jwt
import structlog

from ..models.config import GarmConfiguration
from .garm_client import (
    GarmCancelledError,
    GarmClient,
    GarmError,
    GarmUnauthorizedError,
    GarmUpstreamError,
)
from .metrics import GARM_CALL_ERRORS, GARM_CALLS, GARM_JWT_EXPIRES_AT

T = TypeVar("T")

# A single authenticated call, given the current bearer token
Operation = Callable[[str], Awaitable[T]]


class GarmSession:
    """
    Shared GARM login state with re-authenticate-and-retry semantics.

    The token never leaves the session except as the argument handed to
    the wrapped operation.
    """

    def __init__(self,
                 client: GarmClient,
                 username: str,
                 password: str,
                 email: Optional[str] = None,
                 init: bool = True,
                 logger: Any = None) -> None:
        """
        Initialize the session.

        Args:
            client: GARM API client used for init, login and wrapped calls
            username: GARM admin username
            password: GARM admin password
            email: Admin email, needed for the first-run bootstrap
            init: Run the first-run bootstrap before each login
            logger: Structured logger instance
        """
        self.client = client
        self.logger = (logger or structlog.get_logger()).bind(component="garm_session")

        self._username = username
        self._password = password
        self._email = email or ""
        self._init = init

        self._token: Optional[str] = None
        self._login_task: Optional["asyncio.Task[str]"] = None
        self._logins = 0

    @classmethod
    def from_config(cls,
                    config: GarmConfiguration,
                    transport: Optional[httpx.AsyncBaseTransport] = None,
                    logger: Any = None) -> "GarmSession":
        client = GarmClient(
            base_url=config.server,
            tls_verify=config.tls_verify,
            timeout=config.request_timeout,
            transport=transport,
            logger=logger,
        )
        return cls(
            client,
            username=config.username,
            password=config.password.get_secret_value(),
            email=config.email,
            init=config.init,
            logger=logger,
        )

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    @property
    def login_count(self) -> int:
        """Number of completed login round-trips."""
        return self._logins

    async def ensure_auth(self,
                          op: Operation[T],
                          operation: str,
                          timeout: Optional[float] = None) -> T:
        """
        Run ``op`` with a valid token, re-authenticating once on expiry.

        Args:
            op: Async callable performing one GARM call with the given token
            operation: Logical operation name used as the metrics label
            timeout: Deadline in seconds for the whole call, login included

        Returns:
            Whatever ``op`` returns

        Raises:
            GarmAuthenticationError: If init or login fails
            GarmUpstreamError: If ``op`` fails for another reason, or is
                rejected again right after a fresh login
            GarmCancelledError: If ``timeout`` expires
        """
        GARM_CALLS.labels(method=operation).inc()
        try:
            if timeout is None:
                return await self._call(op, operation)
            return await asyncio.wait_for(self._call(op, operation), timeout)
        except asyncio.TimeoutError as e:
            GARM_CALL_ERRORS.labels(method=operation).inc()
            if timeout is None:
                raise
            raise GarmCancelledError(f"{operation} did not complete within {timeout}s") from e
        except GarmError:
            GARM_CALL_ERRORS.labels(method=operation).inc()
            raise

    async def _call(self, op: Operation[T], operation: str) -> T:
        token = self._token
        if token is None:
            token = await self._relogin(None)

        try:
            return await op(token)
        except GarmUnauthorizedError:
            GARM_CALL_ERRORS.labels(method="client.Unauthenticated").inc()
            self.logger.info("GARM token rejected, re-authenticating", operation=operation)

        token = await self._relogin(token)
        try:
            return await op(token)
        except GarmUnauthorizedError as e:
            raise GarmUpstreamError(
                f"{operation} rejected after re-authentication", status_code=401
            ) from e

    async def _relogin(self, stale: Optional[str]) -> str:
        """
        Return a token newer than ``stale``, logging in only if needed.

        Callers arriving while a login is running share its outcome.
        """
        if self._token is not None and self._token != stale:
            return self._token

        if self._login_task is None:
            self._login_task = asyncio.ensure_future(self._authenticate())
            self._login_task.add_done_callback(self._login_finished)

        # shielded so one caller's deadline does not cancel the login for the rest
        return await asyncio.shield(self._login_task)

    def _login_finished(self, task: "asyncio.Task[str]") -> None:
        if self._login_task is task:
            self._login_task = None
        if not task.cancelled() and task.exception() is not None:
            self.logger.warning("GARM login failed", error=str(task.exception()))

    async def _authenticate(self) -> str:
        if self._init:
            await self._counted("Init", self.client.first_run(self._username, self._password, self._email))

        token = await self._counted("Login", self.client.login(self._username, self._password))
        self._token = token
        self._logins += 1
        self._record_expiry(token)
        self.logger.info("Logged in to GARM", server=self.client.base_url)
        return token

    async def _counted(self, operation: str, call: Awaitable[T]) -> T:
        GARM_CALLS.labels(method=operation).inc()
        try:
            return await call
        except GarmError:
            GARM_CALL_ERRORS.labels(method=operation).inc()
            raise

    def _record_expiry(self, token: str) -> None:
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            self.logger.debug("GARM token is not a decodable JWT", error=str(e))
            return

        exp = claims.get("exp")
        if isinstance(exp, (int, float)):
            GARM_JWT_EXPIRES_AT.set(exp)
            self.logger.info(
                "New GARM token obtained",
                expires_at=datetime.fromtimestamp(exp, tz=timezone.utc).isoformat()
            )

    async def close(self) -> None:
        login_task = self._login_task
        if login_task is not None:
            login_task.cancel()
            await asyncio.gather(login_task, return_exceptions=True)
        await self.client.close()
