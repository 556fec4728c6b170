import hashlib
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from credvault.core.exceptions import BlobProviderError
from credvault.infrastructure.blob.factory import build_provider, build_providers
from credvault.infrastructure.blob.fs_provider import FileSystemProvider
from credvault.infrastructure.blob.gateway import BlobGateway
from credvault.infrastructure.blob.ipfs_provider import IPFSProvider
from credvault.infrastructure.blob.pinata_provider import PinataProvider
from credvault.infrastructure.blob.s3_provider import S3Provider

CID = "QmT78zSuBmuS4z925WZfrqQ1qHaJ56DQaTfyMUF7F8ff5o"


def mocked_ipfs(handler) -> IPFSProvider:
    provider = IPFSProvider("http://ipfs:5001")
    provider.client = httpx.AsyncClient(base_url=provider.base_url, transport=httpx.MockTransport(handler))
    return provider


class TestFactory:

    def test_builds_each_scheme(self, tmp_path):
        providers = build_providers([
            "ipfs+http://ipfs:5001",
            "pinata://jwt-token@api.pinata.cloud?gateway=https://gw.example.org",
            "s3://key:secret@minio:9000/credentials?secure=false",
            f"file://{tmp_path}/blobs",
        ])
        ipfs, pinata, s3, disk = providers

        assert isinstance(ipfs, IPFSProvider) and ipfs.base_url == "http://ipfs:5001"
        assert isinstance(pinata, PinataProvider)
        assert isinstance(s3, S3Provider) and s3.bucket == "credentials"
        assert isinstance(disk, FileSystemProvider) and disk.root == tmp_path / "blobs"

    def test_unknown_scheme_is_rejected(self):
        with pytest.raises(ValueError):
            build_provider("ftp://example.org/blobs")


class TestIPFSProvider:

    @pytest.mark.asyncio
    async def test_upload_returns_cid(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v0/add"
            return httpx.Response(200, json={"Name": "credential.enc", "Hash": CID, "Size": "42"})

        provider = mocked_ipfs(handler)
        assert await provider.upload(b"sealed") == CID
        assert provider.accepts(CID)
        assert not provider.accepts("local_" + "0" * 64)
        await provider.close()

    @pytest.mark.asyncio
    async def test_fetch_returns_content(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["arg"] == CID
            return httpx.Response(200, content=b"sealed")

        provider = mocked_ipfs(handler)
        assert await provider.fetch(CID) == b"sealed"
        await provider.close()

    @pytest.mark.asyncio
    async def test_node_errors_are_provider_errors(self):
        provider = mocked_ipfs(lambda request: httpx.Response(500))
        with pytest.raises(BlobProviderError):
            await provider.upload(b"sealed")
        assert not await provider.probe()
        await provider.close()

    @pytest.mark.asyncio
    async def test_connection_errors_are_provider_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = mocked_ipfs(handler)
        with pytest.raises(BlobProviderError):
            await provider.fetch(CID)
        await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={"Name": "credential.enc"}),
        httpx.Response(200, content=b"<html>gateway error</html>"),
    ])
    async def test_unreadable_add_body_is_provider_error(self, response):
        provider = mocked_ipfs(lambda request: response)
        with pytest.raises(BlobProviderError):
            await provider.upload(b"sealed")
        await provider.close()

    @pytest.mark.asyncio
    async def test_unreadable_body_fails_over_to_next_provider(self, tmp_path):
        broken = mocked_ipfs(lambda request: httpx.Response(200, content=b"not json"))
        gateway = BlobGateway([broken, FileSystemProvider(str(tmp_path))], retry_base=0, retry_cap=0)

        locator = await gateway.upload(b"sealed")
        assert locator.startswith("local_")
        assert gateway.health["ipfs"].available is False
        assert gateway.status()["status"] == "degraded"
        await gateway.close()


class TestPinataProvider:

    @pytest.mark.asyncio
    async def test_missing_hash_is_provider_error(self):
        provider = PinataProvider("jwt-token")
        provider.client = httpx.AsyncClient(
            base_url="https://api.pinata.cloud",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"PinSize": 42})),
        )
        with pytest.raises(BlobProviderError):
            await provider.upload(b"sealed")
        await provider.close()


class TestS3Provider:

    @pytest.fixture
    def provider(self):
        provider = S3Provider("http://minio:9000", "credentials", "key", "secret")
        provider.client = MagicMock()
        return provider

    @pytest.mark.asyncio
    async def test_upload_is_content_addressed(self, provider):
        locator = await provider.upload(b"sealed")

        assert locator == "s3_" + hashlib.sha256(b"sealed").hexdigest()
        _, bucket, key = provider.client.upload_fileobj.call_args.args
        assert bucket == "credentials"
        assert locator.endswith(key)

    @pytest.mark.asyncio
    async def test_client_errors_become_provider_errors(self, provider):
        provider.client.download_fileobj.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )
        with pytest.raises(BlobProviderError):
            await provider.fetch("s3_" + "0" * 64)

    @pytest.mark.asyncio
    async def test_probe_uses_head_bucket(self, provider):
        assert await provider.probe() is True
        provider.client.head_bucket.assert_called_once_with(Bucket="credentials")

        provider.client.head_bucket.side_effect = ClientError({"Error": {"Code": "403"}}, "HeadBucket")
        assert await provider.probe() is False
