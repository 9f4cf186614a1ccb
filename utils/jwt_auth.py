"""
JWT helpers
Issue and verify bearer tokens whose "sub" claim is the viewer id
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import jwt
from jose.exceptions import JWTError

from config.settings import get_fastapi_settings

settings = get_fastapi_settings()


class JWTManager:
    """JWT token manager"""

    @staticmethod
    def create_access_token(
        subject: str,
        expires_delta: Optional[timedelta] = None,
        extra_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a signed access token

        Args:
            subject: viewer id stored in "sub"
            expires_delta: lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES
            extra_claims: additional claims

        Returns:
            encoded token
        """
        to_encode = dict(extra_claims or {})

        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(
                minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
            )

        to_encode.update({"sub": subject, "exp": expire})

        return jwt.encode(
            to_encode,
            settings.SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM
        )

    @staticmethod
    def verify_token(token: str) -> Optional[Dict[str, Any]]:
        """
        Verify a token

        Returns:
            decoded claims, or None when the token is invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None

    @staticmethod
    def viewer_id(token: str) -> Optional[str]:
        """Viewer id from a valid token, None otherwise"""
        payload = JWTManager.verify_token(token)
        if not payload:
            return None
        subject = payload.get("sub")
        return str(subject) if subject else None
