import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Dict

from redis.asyncio import Redis

from credvault.core.exceptions import CryptoError, Unauthenticated, ValidationFailed
from credvault.core.identifiers import normalize_wallet
from credvault.core.security import Principal, TokenService
from credvault.crypto.signatures import verify_signature
from credvault.models.credential import Role

logger = logging.getLogger(__name__)

LOGIN_PREFIX = "login:"


class AuthService:
    """
    Login por firma de wallet:
    1. challenge: nonce = 32 bytes aleatorios || issuedAt, guardado con TTL.
    2. el cliente firma "login:" + nonce.
    3. verify: consume el reto (un solo uso), valida la firma y emite el token.
    """

    def __init__(
        self,
        redis: Redis,
        tokens: TokenService,
        role_directory: Dict[str, str],
        challenge_ttl: int = 300,
    ):
        self.redis = redis
        self.tokens = tokens
        self.role_directory = role_directory
        self.challenge_ttl = challenge_ttl

    @staticmethod
    def _key(wallet_key: str) -> str:
        return f"credvault:challenge:{wallet_key}"

    async def issue_challenge(self, wallet_key: str) -> dict:
        wallet_key = normalize_wallet(wallet_key)
        issued_at = int(time.time())
        nonce = f"{secrets.token_hex(32)}:{issued_at}"

        # Last-writer-wins: un reto nuevo reemplaza al anterior
        await self.redis.set(self._key(wallet_key), nonce, ex=self.challenge_ttl)

        return {
            "walletKey": wallet_key,
            "nonce": nonce,
            "message": LOGIN_PREFIX + nonce,
            "expiresAt": datetime.fromtimestamp(issued_at + self.challenge_ttl, tz=timezone.utc),
        }

    async def verify(self, wallet_key: str, signature: str) -> dict:
        try:
            wallet_key = normalize_wallet(wallet_key)
        except ValidationFailed:
            raise Unauthenticated("Invalid wallet key")

        # 1. Consumo atómico del reto (se borra aunque la firma falle)
        nonce = await self.redis.getdel(self._key(wallet_key))
        if not nonce:
            raise Unauthenticated("Challenge not found or expired")

        # 2. Firma sobre el mensaje exacto del reto
        try:
            valid = verify_signature(wallet_key, LOGIN_PREFIX + nonce, signature)
        except CryptoError:
            valid = False
        if not valid:
            logger.warning(f"🛡️ Firma inválida para {wallet_key}")
            raise Unauthenticated("Signature does not match wallet key")

        # 3. Rol desde el directorio de usuarios
        role = self.resolve_role(wallet_key)
        token, expires_at = self.tokens.issue(wallet_key, role)
        logger.info(f"✅ Sesión emitida para {wallet_key} ({role.value})")
        return self._token_body(token, wallet_key, role, expires_at)

    def refresh(self, principal: Principal) -> dict:
        role = self.resolve_role(principal.wallet_key)
        token, expires_at = self.tokens.issue(principal.wallet_key, role)
        return self._token_body(token, principal.wallet_key, role, expires_at)

    def resolve_role(self, wallet_key: str) -> Role:
        try:
            return Role(self.role_directory.get(wallet_key, Role.OWNER.value))
        except ValueError:
            logger.error(f"Rol desconocido en el directorio para {wallet_key}; se usa owner")
            return Role.OWNER

    @staticmethod
    def _token_body(token: str, wallet_key: str, role: Role, expires_at: datetime) -> dict:
        return {
            "token": token,
            "tokenType": "Bearer",
            "walletKey": wallet_key,
            "role": role.value,
            "expiresAt": expires_at,
        }
