import asyncio
import logging
from typing import Dict

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from credvault.core.exceptions import LedgerTimeout, LedgerTransientError
from credvault.infrastructure.ledger.interface import (
    AnchorLookup,
    AnchorReceipt,
    ILedgerClient,
    RegistrationRequest,
)

logger = logging.getLogger(__name__)


class LedgerGateway:
    """
    Envío de anclajes y consultas al ledger.
    - Reintenta solo errores transitorios (NETWORK_ERROR, TIMEOUT, NONCE_EXPIRED).
    - Serializa los envíos por llave firmante para evitar colisiones de nonce.
    - Antes de cada envío consulta el ledger: una huella ya anclada se adopta,
      nunca se ancla dos veces.
    """

    def __init__(
        self,
        client: ILedgerClient,
        confirmations: int = 1,
        receipt_timeout: float = 120.0,
        retry_base: float = 2.0,
        retry_cap: float = 15.0,
        attempts: int = 3,
    ):
        self.client = client
        self.confirmations = confirmations
        self.receipt_timeout = receipt_timeout
        self.retry_base = retry_base
        self.retry_cap = retry_cap
        self.attempts = attempts
        self._signer_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, signer: str) -> asyncio.Lock:
        lock = self._signer_locks.get(signer)
        if lock is None:
            lock = self._signer_locks[signer] = asyncio.Lock()
        return lock

    async def _retrying(self, operation, label: str):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=wait_exponential(multiplier=self.retry_base, exp_base=2, max=self.retry_cap),
                retry=retry_if_exception_type(LedgerTransientError),
            ):
                with attempt:
                    try:
                        return await operation()
                    except LedgerTransientError as e:
                        logger.warning(
                            f"🔄 Ledger {label} intento {attempt.retry_state.attempt_number}/{self.attempts}: {e.reason}"
                        )
                        raise
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(f"❌ Ledger {label} agotó reintentos: {last}")
            raise LedgerTimeout() from last

    async def anchor(self, request: RegistrationRequest) -> AnchorReceipt:
        """Envía (o adopta) el anclaje y espera las confirmaciones configuradas."""

        async def submit_once() -> str:
            existing = await self.client.lookup(request.fingerprint)
            if existing.anchored and existing.tx_id:
                logger.info(f"♻️ Huella {request.fingerprint} ya anclada en {existing.tx_id}; se adopta")
                return existing.tx_id
            return await self.client.submit_registration(request)

        async with self._lock_for(self.client.signer_address):
            tx_id = await self._retrying(submit_once, "submit")

        return await self._retrying(
            lambda: self.client.wait_for_receipt(tx_id, self.confirmations, self.receipt_timeout),
            "receipt",
        )

    async def lookup(self, fingerprint: str) -> AnchorLookup:
        return await self._retrying(lambda: self.client.lookup(fingerprint), "lookup")

    async def block_height(self) -> int:
        return await self._retrying(self.client.block_height, "block_height")

    async def close(self) -> None:
        await self.client.close()
