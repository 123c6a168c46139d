"""
client/session.py -- Async API client that keeps a session alive.

SessionManager wraps an httpx.AsyncClient and handles the token lifecycle so
callers only see business responses:

  * every request carries "Authorization: Bearer <access token>" from storage;
  * a 401 from anything but login/refresh/register triggers ONE refresh and
    ONE retry of that request. Concurrent 401s share a single in-flight
    refresh (SingleFlight). A request whose token was already replaced while
    it was in flight is retried with the stored token, no new refresh;
  * when the refresh is rejected, local credentials are cleared, on_redirect
    is called once with "/admin/login" or "/login" (depending on
    current_path()), and every waiting request raises SessionExpired;
  * network errors, 5xx and 429 are retried with exponential backoff, at most
    max_attempts sends in total. A 429 whose Retry-After exceeds the backoff
    cap is returned at once.

Usage:
    async with SessionManager("http://localhost:8000/api/v1") as api:
        await api.login("a@x.com", "secret123")
        me = (await api.get("/auth/me")).json()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn

import httpx

from client.singleflight import SingleFlight
from client.storage import CredentialStorage

logger = logging.getLogger("tokengate.client")

# 401s from these endpoints are final: they are how a session starts.
AUTH_ENDPOINTS = ("/auth/login", "/auth/refresh", "/auth/register")


class ApiError(Exception):
    """Non-success response from the API, parsed from the error envelope."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        retry_after: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"{status_code} {code}: {message}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        return cls(
            response.status_code,
            error.get("code", f"http_{response.status_code}"),
            error.get("message", response.reason_phrase),
            error.get("retry_after"),
        )


class SessionExpired(ApiError):
    """The session could not be refreshed; the user has to log in again."""

    def __init__(self, code: str = "session_expired", message: str = "Session expired. Please log in again.") -> None:
        super().__init__(401, code, message)


class SessionManager:
    def __init__(
        self,
        base_url: str,
        storage: CredentialStorage | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        on_redirect: Callable[[str], None] | None = None,
        current_path: Callable[[], str] | None = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 10.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.storage = storage or CredentialStorage()
        self.on_redirect = on_redirect
        self.current_path = current_path or (lambda: "/")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._refresh_flight: SingleFlight[str] = SingleFlight()
        self._redirected = False

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, audience: str = "user") -> dict:
        """Log in and store the returned tokens. Raises ApiError on failure."""
        response = await self._send(
            "POST", "/auth/login", None, json={"email": email, "password": password, "audience": audience}
        )
        if response.status_code != 200:
            raise ApiError.from_response(response)
        return self._start_session(response.json(), audience)

    async def register(self, name: str, email: str, password: str, role: str = "student") -> dict:
        response = await self._send(
            "POST", "/auth/register", None, json={"name": name, "email": email, "password": password, "role": role}
        )
        if response.status_code != 201:
            raise ApiError.from_response(response)
        return self._start_session(response.json(), "user")

    async def logout(self, everywhere: bool = False) -> int:
        """Revoke this session's refresh token (or all of them) and forget local credentials.

        Without a stored refresh token a single-session logout only clears local
        state; the server would read a missing token as "every device".
        """
        if not everywhere and not self.storage.refresh_token:
            self.storage.clear()
            logger.info("No refresh token stored; cleared local credentials only")
            return 0
        try:
            sent_token = self.storage.access_token
            response = await self._send("POST", "/auth/logout", sent_token, json=self._logout_body(everywhere))
            if response.status_code == 401:
                # a refresh rotates the refresh token, so the body is rebuilt after it
                token = await self._replacement_token(sent_token)
                response = await self._send("POST", "/auth/logout", token, json=self._logout_body(everywhere))
        finally:
            self.storage.clear()
        if response.status_code != 200:
            raise ApiError.from_response(response)
        return response.json().get("revoked", 0)

    def _logout_body(self, everywhere: bool) -> dict:
        return {} if everywhere else {"refresh_token": self.storage.refresh_token}

    def _start_session(self, data: dict, audience: str) -> dict:
        self.storage.save(data["access_token"], data["refresh_token"], data.get("principal"), audience)
        self._redirected = False
        return data.get("principal") or {}

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request; refresh and retry once on 401."""
        sent_token = self.storage.access_token
        response = await self._send(method, url, sent_token, **kwargs)
        if response.status_code != 401 or _is_auth_endpoint(url):
            return response

        token = await self._replacement_token(sent_token)
        return await self._send(method, url, token, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _replacement_token(self, sent_token: str | None) -> str:
        """The stored token if another request already refreshed, else a shared refresh."""
        stored = self.storage.access_token
        if stored and stored != sent_token:
            return stored
        return await self._refresh_flight.do(self._refresh)

    async def _refresh(self) -> str:
        refresh_token = self.storage.refresh_token
        if not refresh_token:
            self._expire("token_missing")
        try:
            response = await self._send("POST", "/auth/refresh", None, json={"refresh_token": refresh_token})
        except httpx.TransportError as exc:
            logger.warning("Token refresh failed: %s", exc)
            self._expire("refresh_unreachable")
        if response.status_code != 200:
            self._expire(ApiError.from_response(response).code)
        data = response.json()
        self.storage.update_tokens(data["access_token"], data["refresh_token"])
        logger.info("Access token refreshed")
        return data["access_token"]

    def _expire(self, code: str) -> NoReturn:
        self.storage.clear()
        if not self._redirected:
            self._redirected = True
            target = "/admin/login" if self.current_path().startswith("/admin") else "/login"
            logger.info("Session expired (%s); redirecting to %s", code, target)
            if self.on_redirect is not None:
                self.on_redirect(target)
        raise SessionExpired(code=code)

    # ------------------------------------------------------------------
    # Transport retry
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, token: str | None, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                if attempt == self.max_attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning("%s %s failed (%s); retry %d in %.2fs", method, url, exc, attempt, delay)
                await self._sleep(delay)
                continue
            if attempt == self.max_attempts or not _is_retryable(response):
                return response
            delay = self._retry_delay(response, attempt)
            if delay is None:
                return response
            logger.warning("%s %s -> %d; retry %d in %.2fs", method, url, response.status_code, attempt, delay)
            await self._sleep(delay)
        raise AssertionError("unreachable")

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_cap)

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float | None:
        """Seconds to wait before resending, or None to give up and return the response."""
        if response.status_code == 429:
            retry_after = _retry_after_seconds(response)
            if retry_after is not None:
                return float(retry_after) if retry_after <= self.backoff_cap else None
        return self._backoff(attempt)


def _is_auth_endpoint(url: str) -> bool:
    path = httpx.URL(url).path.rstrip("/")
    return path.endswith(AUTH_ENDPOINTS)


def _is_retryable(response: httpx.Response) -> bool:
    return response.status_code == 429 or response.status_code >= 500


def _retry_after_seconds(response: httpx.Response) -> int | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None
