"""
Security utilities for Supabase authentication.
"""
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jwt import decode as jwt_decode, InvalidTokenError
import structlog

from predictvip.core.exceptions import AuthenticationError
from predictvip.core.settings import settings
from predictvip.api.services.admin import AdminCaller

logger = structlog.get_logger(__name__)

# Missing credentials are reported through AuthenticationError, not HTTPBearer's 403
bearer_scheme = HTTPBearer(auto_error=False)


class SupabaseUser:
    """User object extracted from Supabase JWT token."""

    def __init__(self, user_id: str, email: Optional[str], payload: dict):
        self.id = user_id
        self.email = email
        self.payload = payload

    def __str__(self):
        return f"SupabaseUser(id={self.id}, email={self.email})"

    def __repr__(self):
        return self.__str__()


class SecurityUtils:
    """Security utility functions for Supabase."""

    @staticmethod
    def verify_supabase_token(token: str) -> Optional[dict]:
        """Verify and decode Supabase JWT token."""
        if not settings.supabase_jwt_secret:
            logger.error("Supabase JWT secret not configured")
            return None
        try:
            return jwt_decode(
                token,
                settings.supabase_jwt_secret,
                algorithms=[settings.jwt_algorithm],
                audience=settings.jwt_audience
            )
        except InvalidTokenError as e:
            logger.info("JWT validation failed", error=str(e))
            return None

    @staticmethod
    def extract_user_from_token(payload: dict) -> Optional[SupabaseUser]:
        """Extract user information from JWT payload."""
        user_id = payload.get("sub")
        if not user_id:
            return None
        return SupabaseUser(user_id=user_id, email=payload.get("email"), payload=payload)


class AuthenticationDependency:
    """Authentication dependency for FastAPI routes using Supabase."""

    @staticmethod
    def get_current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
    ) -> SupabaseUser:
        """Get current authenticated user from Supabase JWT token."""
        if credentials is None or not credentials.credentials:
            raise AuthenticationError("Missing or invalid authorization header")

        payload = SecurityUtils.verify_supabase_token(credentials.credentials)
        if payload is None:
            raise AuthenticationError("Could not validate credentials")

        user = SecurityUtils.extract_user_from_token(payload)
        if user is None:
            raise AuthenticationError("Invalid token payload")

        return user


# Convenience functions for dependency injection
get_current_user = AuthenticationDependency.get_current_user


def get_admin_caller(current_user: SupabaseUser = Depends(get_current_user)) -> AdminCaller:
    """Identity handed to admin services; they decide whether it is allowed."""
    return AdminCaller(user_id=current_user.id, email=current_user.email)
