import asyncio
import hashlib
import io
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from credvault.core.exceptions import BlobProviderError
from credvault.infrastructure.blob.interface import IBlobProvider

logger = logging.getLogger(__name__)

LOCATOR_PREFIX = "s3_"


class S3Provider(IBlobProvider):
    """
    Almacenamiento S3 compatible (AWS, MinIO, R2) direccionado por contenido:
    la llave del objeto es el SHA-256 del blob cifrado.
    """

    def __init__(
        self,
        endpoint_url: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
    ):
        self.name = "s3"
        self.bucket = bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(signature_version="s3v4", retries={"max_attempts": 1, "mode": "standard"}),
        )

    def accepts(self, locator: str) -> bool:
        return locator.startswith(LOCATOR_PREFIX)

    async def upload(self, data: bytes) -> str:
        key = hashlib.sha256(data).hexdigest()
        try:
            # boto3 es bloqueante: se ejecuta en un hilo
            await asyncio.to_thread(
                self.client.upload_fileobj,
                io.BytesIO(data),
                self.bucket,
                key,
                ExtraArgs={"ContentType": "application/octet-stream"},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Fallo subiendo a {self.bucket}/{key}: {e}")
            raise BlobProviderError(f"s3 upload failed: {type(e).__name__}") from e
        return f"{LOCATOR_PREFIX}{key}"

    async def fetch(self, locator: str) -> bytes:
        key = locator[len(LOCATOR_PREFIX):]
        buffer = io.BytesIO()
        try:
            await asyncio.to_thread(self.client.download_fileobj, self.bucket, key, buffer)
        except (ClientError, BotoCoreError) as e:
            raise BlobProviderError(f"s3 download failed: {type(e).__name__}") from e
        return buffer.getvalue()

    async def probe(self) -> bool:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError):
            return False
