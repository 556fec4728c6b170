from typing import List
from urllib.parse import parse_qs, unquote, urlparse

from credvault.infrastructure.blob.fs_provider import FileSystemProvider
from credvault.infrastructure.blob.interface import IBlobProvider
from credvault.infrastructure.blob.ipfs_provider import IPFSProvider
from credvault.infrastructure.blob.pinata_provider import PinataProvider
from credvault.infrastructure.blob.s3_provider import S3Provider


def build_provider(url: str) -> IBlobProvider:
    """
    Traduce una URL de BLOB_PROVIDERS a su implementación:
    - ipfs+http(s)://host:port
    - pinata://<jwt>@api.pinata.cloud[?gateway=https://...]
    - s3://<key>:<secret>@host:port/bucket[?secure=false&region=...]
    - file:///ruta/local
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    query = {k: v[0] for k, v in parse_qs(parsed.query).items()}

    if scheme in ("ipfs+http", "ipfs+https"):
        transport = scheme.split("+", 1)[1]
        return IPFSProvider(f"{transport}://{parsed.netloc}{parsed.path}", name=f"ipfs:{parsed.hostname}")

    if scheme == "pinata":
        return PinataProvider(
            jwt_token=unquote(parsed.username or ""),
            api_url=f"https://{parsed.hostname}",
            gateway_url=query.get("gateway", "https://gateway.pinata.cloud"),
        )

    if scheme == "s3":
        secure = query.get("secure", "true").lower() != "false"
        host = parsed.hostname + (f":{parsed.port}" if parsed.port else "")
        return S3Provider(
            endpoint_url=f"{'https' if secure else 'http'}://{host}",
            bucket=parsed.path.strip("/"),
            access_key=unquote(parsed.username or ""),
            secret_key=unquote(parsed.password or ""),
            region=query.get("region", "us-east-1"),
        )

    if scheme == "file":
        return FileSystemProvider(unquote(parsed.path))

    raise ValueError(f"Unsupported blob provider URL scheme: {scheme!r}")


def build_providers(urls: List[str]) -> List[IBlobProvider]:
    return [build_provider(u) for u in urls]
