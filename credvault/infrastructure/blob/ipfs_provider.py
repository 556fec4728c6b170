import logging
import re

import httpx

from credvault.core.exceptions import BlobProviderError
from credvault.infrastructure.blob.interface import IBlobProvider

logger = logging.getLogger(__name__)

CID_RE = re.compile(r"^(Qm[1-9A-HJ-NP-Za-km-z]{44}|bafy[a-z0-9]{55})$")


class IPFSProvider(IBlobProvider):
    """Nodo IPFS vía HTTP RPC (Kubo: /api/v0/add, /api/v0/cat)."""

    def __init__(self, base_url: str, timeout: float = 20.0, name: str = "ipfs"):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def accepts(self, locator: str) -> bool:
        return bool(CID_RE.match(locator))

    async def upload(self, data: bytes) -> str:
        try:
            response = await self.client.post(
                "/api/v0/add",
                params={"pin": "true", "cid-version": "0"},
                files={"file": ("credential.enc", data, "application/octet-stream")},
            )
        except httpx.HTTPError as e:
            raise BlobProviderError(f"{self.name} unreachable: {type(e).__name__}") from e

        if response.status_code != 200:
            raise BlobProviderError(f"{self.name} add returned {response.status_code}")
        try:
            return response.json()["Hash"]
        except (KeyError, ValueError) as e:
            raise BlobProviderError(f"{self.name} add returned an unreadable body") from e

    async def fetch(self, locator: str) -> bytes:
        try:
            response = await self.client.post("/api/v0/cat", params={"arg": locator})
        except httpx.HTTPError as e:
            raise BlobProviderError(f"{self.name} unreachable: {type(e).__name__}") from e

        if response.status_code != 200:
            raise BlobProviderError(f"{self.name} cat returned {response.status_code}")
        return response.content

    async def probe(self) -> bool:
        try:
            response = await self.client.post("/api/v0/version")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
