import asyncio
import logging
from typing import List, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from credvault.config import Settings
from credvault.core.security import TokenService
from credvault.crypto.manager import EncryptionManager
from credvault.db.audit_repo import AuditRepository
from credvault.db.credential_repo import CredentialRepository
from credvault.db.database import build_engine, build_session_factory, init_schema
from credvault.infrastructure.blob.factory import build_providers
from credvault.infrastructure.blob.gateway import BlobGateway
from credvault.infrastructure.blob.interface import IBlobProvider
from credvault.infrastructure.ledger.factory import build_ledger_gateway
from credvault.infrastructure.ledger.interface import ILedgerClient
from credvault.infrastructure.rate_limit import RateLimiter
from credvault.infrastructure.redis_client import build_redis
from credvault.infrastructure.redis_lock import SagaLock
from credvault.logic.access import AccessService
from credvault.logic.audit import AuditService
from credvault.logic.auth import AuthService
from credvault.logic.credentials import CredentialService
from credvault.logic.orchestrator import CredentialOrchestrator
from credvault.logic.recovery import RecoveryWorker
from credvault.logic.verification import VerificationService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Fábrica de dependencias. Construye cada servicio una vez a partir de la
    configuración inmutable; los handlers lo obtienen de `app.state.container`.
    """

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        redis: Redis,
        blobs: BlobGateway,
        ledger_client: Optional[ILedgerClient] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.redis = redis
        self.blobs = blobs

        session_factory = build_session_factory(engine)
        self.credentials = CredentialRepository(session_factory)
        self.events = AuditRepository(session_factory)

        self.ledger = build_ledger_gateway(settings, client=ledger_client)
        self.cipher = EncryptionManager(settings.encryption_key_bytes)
        self.tokens = TokenService(settings.SESSION_SECRET, settings.JWT_ALGORITHM, settings.SESSION_TTL_SECONDS)
        self.saga_lock = SagaLock(redis, ttl=int(settings.SAGA_DEADLINE_SECONDS) + 60)
        self.rate_limiter = RateLimiter(redis)

        self.auth = AuthService(redis, self.tokens, settings.get_role_directory(), settings.CHALLENGE_TTL_SECONDS)
        self.access = AccessService(self.credentials)
        self.audit = AuditService(
            self.credentials, self.events, settings.SUSPICIOUS_WINDOW_MINUTES, settings.SUSPICIOUS_THRESHOLD
        )
        self.orchestrator = CredentialOrchestrator(
            self.credentials, self.blobs, self.ledger, self.cipher, self.saga_lock, settings
        )
        self.recovery = RecoveryWorker(self.credentials, self.orchestrator, self.saga_lock)
        self.verification = VerificationService(
            self.credentials, self.events, self.ledger, self.audit, settings.LEDGER_EXPLORER_URL
        )
        self.credential_service = CredentialService(
            self.credentials, self.events, self.blobs, self.cipher, settings.VERIFICATION_BASE_URL
        )
        self._tasks: List[asyncio.Task] = []

    @classmethod
    async def build(
        cls,
        settings: Settings,
        redis: Optional[Redis] = None,
        providers: Optional[List[IBlobProvider]] = None,
        ledger_client: Optional[ILedgerClient] = None,
    ) -> "ServiceContainer":
        engine = build_engine(settings.RECORD_STORE_URL)
        await init_schema(engine)
        blobs = BlobGateway(
            providers or build_providers(settings.blob_provider_urls),
            deadline=settings.BLOB_DEADLINE_SECONDS,
            retry_base=settings.BLOB_RETRY_BASE_SECONDS,
            retry_cap=settings.BLOB_RETRY_CAP_SECONDS,
        )
        return cls(settings, engine, redis or build_redis(settings.REDIS_URL), blobs, ledger_client)

    def start_background(self) -> None:
        """Loop de recuperación + health-check de proveedores de blobs."""
        if self.settings.RECOVERY_ENABLED:
            self._tasks.append(asyncio.create_task(self.recovery.run_forever(self.settings.RECOVERY_INTERVAL_SECONDS)))
        self._tasks.append(asyncio.create_task(self.blobs.run_health_checks(self.settings.BLOB_HEALTH_INTERVAL_SECONDS)))

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.blobs.close()
        await self.ledger.close()
        await self.redis.aclose()
        await self.engine.dispose()
