import asyncio
import hashlib
import logging
import os
from pathlib import Path

from credvault.core.exceptions import BlobProviderError
from credvault.infrastructure.blob.interface import IBlobProvider

logger = logging.getLogger(__name__)

LOCATOR_PREFIX = "local_"


class FileSystemProvider(IBlobProvider):
    """
    Directorio local direccionado por contenido (`local_<sha256>`).
    Útil como último proveedor de la lista y en entornos on-prem/tests.
    """

    def __init__(self, root_path: str):
        self.name = "filesystem"
        self.root = Path(root_path)
        self.root.mkdir(parents=True, exist_ok=True)

    def accepts(self, locator: str) -> bool:
        return locator.startswith(LOCATOR_PREFIX)

    def _path(self, locator: str) -> Path:
        digest = locator[len(LOCATOR_PREFIX):]
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise BlobProviderError(f"Invalid local locator: {locator}")
        return self.root / locator

    def _write(self, target: Path, data: bytes) -> None:
        if target.exists():
            return
        tmp = target.with_suffix(f".tmp{os.getpid()}")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, target)

    async def upload(self, data: bytes) -> str:
        locator = f"{LOCATOR_PREFIX}{hashlib.sha256(data).hexdigest()}"
        try:
            await asyncio.to_thread(self._write, self._path(locator), data)
        except OSError as e:
            raise BlobProviderError(f"filesystem write failed: {e}") from e
        return locator

    async def fetch(self, locator: str) -> bytes:
        try:
            return await asyncio.to_thread(self._path(locator).read_bytes)
        except OSError as e:
            raise BlobProviderError(f"filesystem read failed: {e}") from e

    async def probe(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)
