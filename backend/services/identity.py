"""
Identity
========
Bearer-token verification for customer and admin endpoints, and the admin
allow-list policy.

Tokens are verified with PyJWT, either against a shared HS256 secret or
against the identity provider's published JWKS keys.

pip install "pyjwt[crypto]" structlog
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import jwt
import structlog
from pydantic import BaseModel, Field

from config import settings
from payments.errors import Forbidden, Unauthorized


class Identity(BaseModel):
    uid: str
    email: Optional[str] = None
    claims: dict = Field(default_factory=dict)


class IIdentityVerifier(ABC):

    @abstractmethod
    async def verify(self, authorization: Optional[str]) -> Identity:
        """Resolve an Authorization header to an identity; raises Unauthorized"""
        pass


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthorized("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Authorization header must be a Bearer token")
    return token.strip()


class JwtIdentityVerifier(IIdentityVerifier):
    """
    PyJWT verifier.

    With a JWKS URL (e.g. Firebase's securetoken keys) tokens are RS256 and
    the signing key is looked up by `kid`; otherwise the shared secret is
    used with HS256.
    """

    def __init__(
        self,
        secret: str = None,
        jwks_url: str = None,
        audience: str = None,
        issuer: str = None,
    ):
        self.secret = secret if secret is not None else settings.AUTH_JWT_SECRET
        self.jwks_url = jwks_url if jwks_url is not None else settings.AUTH_JWKS_URL
        self.audience = (audience if audience is not None else settings.AUTH_AUDIENCE) or None
        self.issuer = (issuer if issuer is not None else settings.AUTH_ISSUER) or None
        self._jwks_client = jwt.PyJWKClient(self.jwks_url) if self.jwks_url else None
        self._logger = structlog.get_logger().bind(component="identity")

    async def _signing_key(self, token: str):
        if self._jwks_client is not None:
            signing_key = await asyncio.to_thread(self._jwks_client.get_signing_key_from_jwt, token)
            return signing_key.key, ["RS256"]
        if self.secret:
            return self.secret, ["HS256"]
        raise Unauthorized("Token verification is not configured")

    async def verify(self, authorization: Optional[str]) -> Identity:
        token = bearer_token(authorization)
        try:
            key, algorithms = await self._signing_key(token)
            claims = jwt.decode(
                token,
                key,
                algorithms=algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.PyJWTError as e:
            self._logger.warning("token_rejected", error=str(e), error_type=type(e).__name__)
            raise Unauthorized("Invalid or expired token") from e

        uid = claims.get("uid") or claims.get("user_id") or claims.get("sub")
        if not uid:
            raise Unauthorized("Token carries no subject")
        return Identity(uid=uid, email=claims.get("email"), claims=claims)


class AdminPolicy:
    """Allow-list of privileged uids, plus an opt-in admin claim"""

    def __init__(self, admin_uids: Iterable[str] = None, admin_claim: str = None):
        self.admin_uids = frozenset(settings.ADMIN_UIDS if admin_uids is None else admin_uids)
        self.admin_claim = (admin_claim if admin_claim is not None else settings.ADMIN_CLAIM) or None

    def is_admin(self, identity: Identity) -> bool:
        if identity.uid in self.admin_uids:
            return True
        return self.admin_claim is not None and identity.claims.get(self.admin_claim) is True

    def require_admin(self, identity: Identity) -> Identity:
        if not self.is_admin(identity):
            raise Forbidden("Admin privileges required")
        return identity
