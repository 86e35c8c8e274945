import os
from typing import Any, Dict, Iterable, Optional, Set

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from scopegen.db import User, get_session
from scopegen.errors import error_response, get_request_id


class ClerkAuthMiddleware(BaseHTTPMiddleware):
    """Authenticates Clerk session tokens or the mobile companion API key.

    Successful requests carry ``request.state.user_id``, ``email`` and the
    provisioned ``User`` row.
    """

    def __init__(
        self,
        app,
        exempt_paths: Optional[Iterable[str]] = None,
        exempt_prefixes: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.exempt_paths: Set[str] = set(exempt_paths or [])
        self.exempt_prefixes: Set[str] = set(exempt_prefixes or [])

    @staticmethod
    def _jwt_key() -> Optional[str]:
        key = os.getenv("CLERK_JWT_KEY")
        if key:
            # PEM keys are often stored with escaped newlines
            key = key.replace("\\n", "\n")
        return key

    def _unauthorized(self, request: Request, message: str, status_code: int = 401) -> Response:
        code = "UNAUTHORIZED" if status_code == 401 else "INTERNAL"
        return error_response(get_request_id(request), status_code, code, message)

    def _mobile_identity(self, request: Request) -> Optional[Dict[str, Any]]:
        api_key = request.headers.get("x-mobile-api-key")
        expected = os.getenv("MOBILE_API_KEY")
        if not api_key or not expected or api_key != expected:
            return None
        return {"sub": request.headers.get("x-mobile-user-id"), "email": None}

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if (
            request.method == "OPTIONS"
            or path in self.exempt_paths
            or any(path.startswith(prefix) for prefix in self.exempt_prefixes)
        ):
            return await call_next(request)

        payload = self._mobile_identity(request)
        if payload is not None:
            if not payload["sub"]:
                return self._unauthorized(request, "Missing x-mobile-user-id")
        else:
            jwt_key = self._jwt_key()
            if not jwt_key:
                return self._unauthorized(request, "Auth key not configured", status_code=500)

            auth_header = request.headers.get("Authorization") or ""
            if not auth_header.lower().startswith("bearer "):
                return self._unauthorized(request, "Missing bearer token")

            token = auth_header.split(" ", 1)[1].strip()
            if not token:
                return self._unauthorized(request, "Missing bearer token")

            algorithm = os.getenv("CLERK_JWT_ALGORITHM", "RS256")
            try:
                payload = jwt.decode(
                    token,
                    jwt_key,
                    algorithms=[algorithm],
                    options={"verify_aud": False},
                )
            except jwt.PyJWTError:
                return self._unauthorized(request, "Invalid token")

        user_id = payload.get("sub") or payload.get("user_id")
        email = payload.get("email")

        if not user_id:
            return self._unauthorized(request, "Token missing user identifier")

        async with get_session() as session:
            user = await session.get(User, user_id)
            if not user:
                user = User(id=user_id, email=email or "")
                session.add(user)
                await session.commit()
                await session.refresh(user)
            elif email and user.email != email:
                user.email = email
                session.add(user)
                await session.commit()

        request.state.user_id = user_id
        request.state.email = email or user.email
        request.state.user = user
        request.state.jwt_payload = payload
        return await call_next(request)
