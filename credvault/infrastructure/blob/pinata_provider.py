import logging

import httpx

from credvault.core.exceptions import BlobProviderError
from credvault.infrastructure.blob.interface import IBlobProvider
from credvault.infrastructure.blob.ipfs_provider import CID_RE

logger = logging.getLogger(__name__)


class PinataProvider(IBlobProvider):
    """Servicio de pinning Pinata: sube por la API y lee por su gateway IPFS."""

    def __init__(
        self,
        jwt_token: str,
        api_url: str = "https://api.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud",
        timeout: float = 20.0,
    ):
        self.name = "pinata"
        self.gateway_url = gateway_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={"Authorization": f"Bearer {jwt_token}"},
            timeout=timeout,
        )

    def accepts(self, locator: str) -> bool:
        return bool(CID_RE.match(locator))

    async def upload(self, data: bytes) -> str:
        try:
            response = await self.client.post(
                "/pinning/pinFileToIPFS",
                files={"file": ("credential.enc", data, "application/octet-stream")},
                data={"pinataOptions": '{"cidVersion": 0}'},
            )
        except httpx.HTTPError as e:
            raise BlobProviderError(f"pinata unreachable: {type(e).__name__}") from e

        if response.status_code != 200:
            raise BlobProviderError(f"pinata pin returned {response.status_code}")
        try:
            return response.json()["IpfsHash"]
        except (KeyError, ValueError) as e:
            raise BlobProviderError("pinata pin returned an unreadable body") from e

    async def fetch(self, locator: str) -> bytes:
        try:
            response = await self.client.get(f"{self.gateway_url}/ipfs/{locator}")
        except httpx.HTTPError as e:
            raise BlobProviderError(f"pinata gateway unreachable: {type(e).__name__}") from e

        if response.status_code != 200:
            raise BlobProviderError(f"pinata gateway returned {response.status_code}")
        return response.content

    async def probe(self) -> bool:
        try:
            response = await self.client.get("/data/testAuthentication")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
