import json
import time
from typing import Callable

import jwt
from fastapi import Request, Response
from sqlalchemy import select
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.logging import api_logger, app_logger
from app.core.security import decode_access_token
from app.database import AsyncSessionLocal
from app.models.user import User

ADMIN_KEY_HEADER = "X-Admin-Key"


def client_ip(request: Request) -> str:
    """First hop from X-Forwarded-For / X-Real-IP, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def request_actor(request: Request) -> str:
    """Who made the request, for the access log. Never includes credentials."""
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.username}"
    if request.headers.get(ADMIN_KEY_HEADER):
        return "operator"
    return "anonymous"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Write one access-log line per request: method, path, status, caller and
    duration. Request bodies are never logged (they carry session secrets and
    passwords).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in settings.LOG_EXCLUDED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        query = json.dumps(dict(request.query_params)) if request.query_params else "{}"

        try:
            response = await call_next(request)
        except Exception as e:
            api_logger.error(
                f"{request.method} {request.url.path} - Status: 500 - IP: {client_ip(request)} - "
                f"Actor: {request_actor(request)} - Query: {query} - Error: {e!r}"
            )
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        # The user is injected further down the stack, so read it after the call
        api_logger.info(
            f"{request.method} {request.url.path} - Status: {response.status_code} - "
            f"IP: {client_ip(request)} - Actor: {request_actor(request)} - "
            f"UserAgent: {request.headers.get('User-Agent', 'Unknown')} - "
            f"Query: {query} - Duration: {duration_ms}ms"
        )
        return response


class UserInjectionMiddleware(BaseHTTPMiddleware):
    """
    Resolve the bearer token to a User and store it in ``request.state.user``.

    Invalid, expired or orphaned tokens leave ``user`` as None; the
    ``get_current_user`` dependency turns that into a 401 for protected routes.
    """

    PUBLIC_PATHS = {
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
        "/register",
        "/login",
        "/admin/auth",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.user = None

        if request.url.path not in self.PUBLIC_PATHS:
            token = self._bearer_token(request)
            if token:
                request.state.user = await self._load_user(token)

        return await call_next(request)

    @staticmethod
    def _bearer_token(request: Request) -> str | None:
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Bearer" or not token.strip():
            return None
        return token.strip()

    @staticmethod
    async def _load_user(token: str) -> User | None:
        try:
            username = decode_access_token(token).get("sub")
        except jwt.PyJWTError:
            return None
        if not username:
            return None

        try:
            async with AsyncSessionLocal() as db:
                result = await db.execute(select(User).where(User.username == username))
                return result.scalar_one_or_none()
        except Exception as e:
            app_logger.error(f"User lookup failed for token subject {username}: {e}")
            return None
