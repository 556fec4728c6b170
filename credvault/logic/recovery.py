import asyncio
import logging
import uuid

from credvault.core.exceptions import CredVaultError
from credvault.db.credential_repo import CredentialRepository
from credvault.infrastructure.redis_lock import SagaLock
from credvault.logic.orchestrator import CredentialOrchestrator

logger = logging.getLogger(__name__)


class RecoveryWorker:
    """
    Avanza registros atascados en `draft` o `blob-stored` (p. ej. tras un reinicio).
    Cada registro se toma con el lock de saga; si una saga viva lo tiene, se salta.
    """

    def __init__(self, repo: CredentialRepository, orchestrator: CredentialOrchestrator, saga_lock: SagaLock):
        self.repo = repo
        self.orchestrator = orchestrator
        self.saga_lock = saga_lock

    async def run_once(self) -> int:
        advanced = 0
        for record in await self.repo.list_pending():
            token = f"recovery:{uuid.uuid4()}"
            if not await self.saga_lock.acquire(record.fingerprint, token):
                continue
            try:
                if await self.orchestrator.resume(record) is not None:
                    advanced += 1
            except CredVaultError as e:
                logger.warning(f"🔄 Recuperación de {record.fingerprint} pospuesta: {e.kind}")
            finally:
                await self.saga_lock.release(record.fingerprint, token)
        return advanced

    async def run_forever(self, interval: float) -> None:
        logger.info("👷 Worker de recuperación de sagas activo...")
        while True:
            try:
                advanced = await self.run_once()
                if advanced:
                    logger.info(f"✅ {advanced} registros reanudados")
            except asyncio.CancelledError:
                logger.info("Worker shutting down...")
                raise
            except Exception as e:
                logger.error(f"Critical recovery worker error: {e}")
            await asyncio.sleep(interval)
