import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Tuple

from jose import JWTError, jwt

from credvault.core.exceptions import Unauthenticated
from credvault.core.identifiers import WALLET_RE
from credvault.models.credential import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Identidad autenticada adjunta al request por el middleware."""
    wallet_key: str
    role: Role
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class TokenService:
    """Emisión y validación de tokens de sesión (JWT firmado con el secreto del servidor)."""

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_seconds: int = 86400):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    def issue(self, wallet_key: str, role: Role) -> Tuple[str, datetime]:
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(seconds=self.ttl_seconds)
        claims = {
            "sub": wallet_key,
            "role": role.value,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm), expires_at

    def validate(self, token: str) -> Principal:
        """
        Valida firma, expiración y forma de los claims.
        Cualquier fallo se expone como UNAUTHENTICATED sin detalles internos.
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            raise Unauthenticated("Invalid or expired session token")

        wallet_key = str(payload.get("sub", "")).lower()
        if not WALLET_RE.match(wallet_key):
            raise Unauthenticated("Session token has an invalid subject")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise Unauthenticated("Session token has an invalid role")

        return Principal(
            wallet_key=wallet_key,
            role=role,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
