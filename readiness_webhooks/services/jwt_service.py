"""
JWT token service for authentication.

Tokens are issued by the platform's auth service; this service only needs
to verify them. create_token exists for local tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from readiness_webhooks.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, user_id: str, org_id: str, role: str, email: str) -> str:
        """
        Create a JWT token with user context.

        Args:
            user_id: User's unique ID
            org_id: Organisation ID
            role: User role (admin or member)
            email: User's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": user_id,
            "org_id": org_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
