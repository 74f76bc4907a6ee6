"""
Court Backend Authentication Module

Handles the bearer-token session:
1. Log in with staff id/email, password and role
2. Refresh the access token with the stored refresh token
3. Log out (always clears local state, even when the backend call fails)

Tokens and the signed-in user live on the SessionContext, which persists
them to durable storage.
"""
import asyncio
import logging
from typing import Optional

import httpx

from errors import AuthError, CourtAPIError, NetworkError
from schemas import ApiEnvelope, Failure, error_from_failure, parse_response
from session import SessionContext, SessionUser, USER_ROLES

logger = logging.getLogger(__name__)


class CourtAuth:
    """Login, refresh and logout against the /auth endpoints."""

    def __init__(self, session: SessionContext, http_client: httpx.AsyncClient):
        self.session = session
        self._http_client = http_client
        self._refresh_task: Optional[asyncio.Task] = None

    async def _post(self, endpoint: str, json_data: dict = None, token: str = None) -> ApiEnvelope:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._http_client.post(endpoint, json=json_data, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or "Network error. Please check your connection.") from e

        result = parse_response(response)
        if isinstance(result, Failure):
            raise error_from_failure(result)
        return result.envelope

    async def login(self, username: str, password: str, role: str) -> SessionUser:
        """Authenticate and attach the user to the session."""
        if role not in USER_ROLES:
            raise AuthError(f"Unknown role: {role}", code="VALIDATION_ERROR", status=400)

        envelope = await self._post(
            "/auth/login",
            json_data={"username": username, "password": password, "role": role},
        )
        if not envelope.user or not envelope.token:
            raise AuthError(envelope.message or "Login failed", code="AUTH_INVALID")

        user = SessionUser.from_payload(envelope.user)
        self.session.start(user, envelope.token, envelope.refresh_token)
        logger.info("Logged in as %s (%s)", user.staff_id, user.role)
        return user

    async def refresh_access_token(self) -> str:
        """
        Exchange the stored refresh token for new access + refresh tokens.

        Concurrent callers share one refresh request. Any failure clears the
        session and raises AuthError.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> str:
        refresh_token = self.session.refresh_token
        if not refresh_token:
            self.session.clear()
            raise AuthError("No refresh token available", code="NO_REFRESH_TOKEN", status=401)

        try:
            envelope = await self._post("/auth/refresh", json_data={"refreshToken": refresh_token})
        except CourtAPIError as e:
            logger.warning("Token refresh failed (%s); clearing session", e.code)
            self.session.clear()
            if isinstance(e, AuthError):
                raise
            raise AuthError(e.message or "Refresh failed", code="REFRESH_ERROR", status=e.status) from e

        if not envelope.token:
            self.session.clear()
            raise AuthError("Refresh response carried no token", code="REFRESH_ERROR")

        self.session.set_tokens(envelope.token, envelope.refresh_token)
        logger.info("Access token refreshed")
        return envelope.token

    async def logout(self) -> None:
        """Tell the backend, then drop local state regardless of outcome."""
        try:
            if self.session.token:
                await self._post("/auth/logout", token=self.session.token)
        except CourtAPIError as e:
            logger.warning("Logout request failed: %s", e)
        finally:
            self.session.clear()

    def get_access_token(self) -> Optional[str]:
        return self.session.token

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated
