import asyncio

import pytest

from credvault.core.exceptions import BlobProviderError, BlobTimeout, BlobUnavailable
from credvault.infrastructure.blob.fs_provider import FileSystemProvider
from credvault.infrastructure.blob.gateway import BlobGateway
from credvault.infrastructure.blob.interface import IBlobProvider


class FlakyProvider(IBlobProvider):
    """Proveedor en memoria que falla las primeras `failures` llamadas."""

    def __init__(self, name: str, failures: int = 0, prefix: str = "mem_", delay: float = 0.0):
        self.name = name
        self.failures = failures
        self.prefix = prefix
        self.delay = delay
        self.calls = 0
        self.blobs = {}

    def accepts(self, locator: str) -> bool:
        return locator.startswith(self.prefix)

    async def upload(self, data: bytes) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise BlobProviderError(f"{self.name} unavailable")
        locator = f"{self.prefix}{len(self.blobs)}"
        self.blobs[locator] = data
        return locator

    async def fetch(self, locator: str) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise BlobProviderError(f"{self.name} unavailable")
        return self.blobs[locator]

    async def probe(self) -> bool:
        return self.calls >= self.failures


def gateway(*providers, deadline: float = 5.0) -> BlobGateway:
    return BlobGateway(list(providers), deadline=deadline, retry_base=0, retry_cap=0)


@pytest.mark.asyncio
async def test_retries_transient_failures_on_same_provider():
    primary = FlakyProvider("primary", failures=2)
    blobs = gateway(primary)

    locator = await blobs.upload(b"sealed")

    assert locator == "mem_0"
    assert primary.calls == 3


@pytest.mark.asyncio
async def test_fails_over_after_exhausting_retries():
    primary = FlakyProvider("primary", failures=10, prefix="p_")
    secondary = FlakyProvider("secondary", prefix="s_")
    blobs = gateway(primary, secondary)

    locator = await blobs.upload(b"sealed")

    assert locator.startswith("s_")
    assert primary.calls == 3
    status = blobs.status()
    assert status["status"] == "degraded"
    assert status["providers"][0] == {"name": "primary", "available": False, "lastLatency": None}

    # El siguiente upload empieza por el proveedor sano
    await blobs.upload(b"other")
    assert primary.calls == 3


@pytest.mark.asyncio
async def test_all_providers_down_is_blob_unavailable():
    blobs = gateway(FlakyProvider("a", failures=10), FlakyProvider("b", failures=10))
    with pytest.raises(BlobUnavailable):
        await blobs.upload(b"sealed")
    assert blobs.status()["status"] == "unavailable"


@pytest.mark.asyncio
async def test_deadline_is_blob_timeout():
    blobs = gateway(FlakyProvider("slow", delay=1.0), deadline=0.05)
    with pytest.raises(BlobTimeout):
        await blobs.upload(b"sealed")
    assert blobs.status()["queueDepth"] == 0


@pytest.mark.asyncio
async def test_fetch_is_routed_by_locator(tmp_path):
    memory = FlakyProvider("memory", prefix="mem_")
    disk = FileSystemProvider(str(tmp_path))
    blobs = gateway(memory, disk)

    locator = await disk.upload(b"on disk")
    assert locator.startswith("local_")

    assert await blobs.fetch(locator) == b"on disk"
    assert memory.calls == 0

    with pytest.raises(BlobUnavailable):
        await blobs.fetch("unknown_locator")


@pytest.mark.asyncio
async def test_filesystem_provider_is_content_addressed(tmp_path):
    disk = FileSystemProvider(str(tmp_path))
    first = await disk.upload(b"same bytes")
    second = await disk.upload(b"same bytes")

    assert first == second
    assert len(list(tmp_path.iterdir())) == 1
    assert await disk.probe()
    with pytest.raises(BlobProviderError):
        await disk.fetch("local_../../etc/passwd")


@pytest.mark.asyncio
async def test_probe_all_restores_availability():
    primary = FlakyProvider("primary", failures=3)
    secondary = FlakyProvider("secondary")
    blobs = gateway(primary, secondary)

    await blobs.upload(b"sealed")
    assert not blobs.health["primary"].available

    await blobs.probe_all()
    assert blobs.health["primary"].available
    assert blobs.status()["status"] == "healthy"
