"""Token verification against the external auth collaborator.

Tokens are issued by the account service; this module only checks them.
The user ID is read from the configured claim (``id`` by default, the
claim the account service signs), falling back to the standard ``sub``.
"""
import logging
from typing import Optional, Protocol

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from palchat.config import AppConfig
from palchat.errors import Unauthorized

logger = logging.getLogger(__name__)


class TokenVerifier(Protocol):
    """Anything that can turn a credential token into a user ID."""

    def verify(self, token: str) -> str:
        ...


class JWTTokenVerifier:
    """Verifies signed JWTs with PyJWT."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", user_id_claim: str = "id"):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.user_id_claim = user_id_claim

    @classmethod
    def from_config(cls, config: AppConfig) -> "JWTTokenVerifier":
        return cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.auth.jwt_algorithm,
            user_id_claim=config.auth.user_id_claim,
        )

    def verify(self, token: str) -> str:
        """Decode a token and return the user ID it was issued for.

        Raises:
            Unauthorized: If the token is missing, expired, malformed or has
                no user ID claim.
        """
        if not token:
            raise Unauthorized("Not authorized, no token")
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise Unauthorized("Session expired, please log in again")
        except InvalidTokenError as exc:
            logger.debug("Rejected token: %s", exc)
            raise Unauthorized("Not authorized, token failed")

        user_id: Optional[object] = claims.get(self.user_id_claim) or claims.get("sub")
        if not user_id:
            raise Unauthorized("Token carries no user id")
        return str(user_id)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
