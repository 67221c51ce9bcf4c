"""
Signed access tokens.

An access token is a short-lived HS256 JWT carrying the user id, role names
and the flattened "resource:action" scope. Each token has a random ``jti`` so
that logout can deny-list it. Refresh tokens are opaque strings kept
server-side by IdentityStore, not JWTs.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from loguru import logger


DEFAULT_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REQUIRED_CLAIMS = ["exp", "iat", "jti"]


@dataclass
class AccessClaims:
    """
    Claims of a verified access token.

    Attributes:
        user_id: Subject
        username: Login name at issue time
        roles: Role names at issue time
        permissions: "resource:action" scope at issue time
        iat: Issue time (UTC)
        exp: Expiry (UTC)
        jti: Unique token id, the revocation handle
        token_type: Always "access"
    """
    user_id: str
    username: str
    iat: datetime
    exp: datetime
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    jti: str = field(default_factory=lambda: secrets.token_urlsafe(16))
    token_type: str = ACCESS_TOKEN_TYPE

    def to_jwt(self) -> Dict[str, Any]:
        return {
            "sub": self.user_id,
            "user_id": self.user_id,
            "username": self.username,
            "roles": self.roles,
            "permissions": self.permissions,
            "iat": int(self.iat.timestamp()),
            "exp": int(self.exp.timestamp()),
            "jti": self.jti,
            "type": self.token_type,
        }

    @classmethod
    def from_jwt(cls, claims: Dict[str, Any]) -> "AccessClaims":
        return cls(
            user_id=claims.get("user_id") or claims["sub"],
            username=claims["username"],
            roles=list(claims.get("roles") or []),
            permissions=list(claims.get("permissions") or []),
            iat=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            jti=claims["jti"],
            token_type=claims.get("type", ""),
        )


class JWTHandler:
    """Issues and verifies access tokens under one signing key."""

    def __init__(self, secret_key: str, algorithm: str = DEFAULT_ALGORITHM, expire_minutes: int = 60):
        self._secret = secret_key
        self.algorithm = algorithm
        self.lifetime = timedelta(minutes=expire_minutes)

    @property
    def expires_in_seconds(self) -> int:
        return int(self.lifetime.total_seconds())

    def create_access_token(self, user_id: str, username: str, roles: List[str], permissions: List[str]) -> str:
        """
        Sign a new access token.

        Returns:
            Encoded JWT
        """
        issued = datetime.now(timezone.utc).replace(microsecond=0)
        claims = AccessClaims(
            user_id=user_id,
            username=username,
            roles=list(roles),
            permissions=list(permissions),
            iat=issued,
            exp=issued + self.lifetime,
        )
        encoded = jwt.encode(claims.to_jwt(), self._secret, algorithm=self.algorithm)
        logger.debug(f"Issued access token {claims.jti[:6]}... to {username}")
        return encoded

    def verify_token(self, token: str) -> Optional[AccessClaims]:
        """
        Check signature, expiry and token type.

        Returns:
            The token's claims, or None for any token that must not be honoured
        """
        try:
            raw = jwt.decode(token, self._secret, algorithms=[self.algorithm], options={"require": REQUIRED_CLAIMS})
            claims = AccessClaims.from_jwt(raw)
        except jwt.ExpiredSignatureError:
            logger.debug("Rejected expired access token")
            return None
        except (jwt.InvalidTokenError, KeyError) as e:
            logger.warning(f"Rejected malformed access token: {e}")
            return None

        if claims.token_type != ACCESS_TOKEN_TYPE:
            logger.warning(f"Rejected token of type '{claims.token_type}' presented as access token")
            return None
        return claims
