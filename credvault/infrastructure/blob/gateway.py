import asyncio
import logging
import time
from typing import Awaitable, Callable, List

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from credvault.core.exceptions import BlobProviderError, BlobTimeout, BlobUnavailable
from credvault.infrastructure.blob.interface import IBlobProvider, ProviderHealth

logger = logging.getLogger(__name__)


class BlobGateway:
    """
    Gateway multi-proveedor del blob store.
    1. Recorre los proveedores en orden (los disponibles primero).
    2. Reintenta cada uno con backoff exponencial antes de hacer failover.
    3. Toda operación tiene un deadline total (BLOB_TIMEOUT).
    """

    def __init__(
        self,
        providers: List[IBlobProvider],
        deadline: float = 30.0,
        retry_base: float = 1.0,
        retry_cap: float = 8.0,
        attempts: int = 3,
    ):
        if not providers:
            raise ValueError("BlobGateway requiere al menos un proveedor")
        self.providers = providers
        self.health = {p.name: ProviderHealth(name=p.name) for p in providers}
        self.deadline = deadline
        self.retry_base = retry_base
        self.retry_cap = retry_cap
        self.attempts = attempts
        self._in_flight = 0

    def _ordered(self) -> List[IBlobProvider]:
        # Orden estable: primero los sanos, respetando la prioridad configurada
        return sorted(self.providers, key=lambda p: not self.health[p.name].available)

    async def _call(self, provider: IBlobProvider, op: Callable[..., Awaitable], arg):
        health = self.health[provider.name]
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.retry_base, exp_base=2, max=self.retry_cap),
            retry=retry_if_exception_type(BlobProviderError),
            reraise=True,
        ):
            with attempt:
                started = time.monotonic()
                try:
                    result = await op(arg)
                except BlobProviderError as e:
                    logger.warning(
                        f"🔄 {provider.name} intento {attempt.retry_state.attempt_number}/{self.attempts}: {e}"
                    )
                    raise
                health.last_latency = round(time.monotonic() - started, 4)
                health.available = True
                return result

    async def _guarded(self, coro, operation: str):
        self._in_flight += 1
        try:
            return await asyncio.wait_for(coro, timeout=self.deadline)
        except asyncio.TimeoutError:
            logger.error(f"⏱️ Operación {operation} excedió el deadline de {self.deadline}s")
            raise BlobTimeout()
        finally:
            self._in_flight -= 1

    async def upload(self, data: bytes) -> str:
        return await self._guarded(self._upload(data), "upload")

    async def fetch(self, locator: str) -> bytes:
        return await self._guarded(self._fetch(locator), "fetch")

    async def _upload(self, data: bytes) -> str:
        for provider in self._ordered():
            try:
                locator = await self._call(provider, provider.upload, data)
                logger.info(f"✅ Blob almacenado en {provider.name}: {locator}")
                return locator
            except BlobProviderError as e:
                self.health[provider.name].available = False
                logger.error(f"❌ Failover: {provider.name} agotó reintentos ({e})")
        raise BlobUnavailable()

    async def _fetch(self, locator: str) -> bytes:
        for provider in self._ordered():
            if not provider.accepts(locator):
                continue
            try:
                return await self._call(provider, provider.fetch, locator)
            except BlobProviderError as e:
                logger.error(f"❌ {provider.name} no pudo servir {locator}: {e}")
        raise BlobUnavailable()

    async def probe_all(self) -> None:
        """Actualiza la salud de todos los proveedores (tarea de fondo)."""
        for provider in self.providers:
            health = self.health[provider.name]
            started = time.monotonic()
            try:
                available = await asyncio.wait_for(provider.probe(), timeout=self.deadline)
            except asyncio.TimeoutError:
                available = False
            health.available = bool(available)
            if available:
                health.last_latency = round(time.monotonic() - started, 4)

    async def run_health_checks(self, interval: float) -> None:
        logger.info("👷 Health-check de proveedores de blobs activo...")
        while True:
            try:
                await self.probe_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error en health-check de blobs: {e}")
            await asyncio.sleep(interval)

    def status(self) -> dict:
        providers = [self.health[p.name].to_dict() for p in self.providers]
        available = sum(1 for p in providers if p["available"])
        if available == len(providers):
            overall = "healthy"
        elif available:
            overall = "degraded"
        else:
            overall = "unavailable"
        return {"status": overall, "queueDepth": self._in_flight, "providers": providers}

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()
