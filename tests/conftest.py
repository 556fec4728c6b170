import json

import pytest
import pytest_asyncio
from eth_account import Account
from fakeredis import aioredis
from httpx import ASGITransport, AsyncClient

from credvault.config import Settings
from credvault.container import ServiceContainer
from credvault.infrastructure.blob.fs_provider import FileSystemProvider
from credvault.infrastructure.ledger.memory_client import InMemoryLedgerClient
from credvault.main import create_app
from credvault.models.credential import Role
from tests.factories import ADMIN, HELLO, ISSUER, METADATA, OWNER


def build_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        RECORD_STORE_URL=f"sqlite+aiosqlite:///{tmp_path}/credvault.db",
        REDIS_URL="redis://localhost:6379/15",
        LEDGER_RPC_URL="memory://",
        LEDGER_RETRY_BASE_SECONDS=0,
        LEDGER_RETRY_CAP_SECONDS=0,
        BLOB_PROVIDERS=f"file://{tmp_path}/blobs",
        BLOB_RETRY_BASE_SECONDS=0,
        BLOB_RETRY_CAP_SECONDS=0,
        BLOB_DEADLINE_SECONDS=5,
        ROLE_DIRECTORY_JSON=json.dumps({ISSUER: "issuer", ADMIN: "admin"}),
        RATE_LIMIT_PER_WALLET="1000/60s",
        RATE_LIMIT_VERIFY_PER_IP="1000/60s",
        RECOVERY_ENABLED=False,
        SAGA_DEADLINE_SECONDS=10,
        VERIFICATION_BASE_URL="https://verify.example.org/verify",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path, request):
    return build_settings(tmp_path, **getattr(request, "param", {}))


@pytest.fixture
def ledger_client():
    return InMemoryLedgerClient()


@pytest.fixture
def fake_redis():
    return aioredis.FakeRedis(decode_responses=True)


@pytest_asyncio.fixture
async def container(settings, tmp_path, fake_redis, ledger_client):
    built = await ServiceContainer.build(
        settings,
        redis=fake_redis,
        providers=[FileSystemProvider(str(tmp_path / "blobs"))],
        ledger_client=ledger_client,
    )
    yield built
    await built.shutdown()


@pytest.fixture
def app(container):
    return create_app(container=container)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as c:
        yield c


@pytest.fixture
def auth_headers(container):
    """Cabeceras Bearer para una wallet, con el rol del directorio (owner por defecto)."""
    def build(wallet_key: str, role: Role = None):
        role = role or container.auth.resolve_role(wallet_key)
        token, _ = container.tokens.issue(wallet_key, role)
        return {"Authorization": f"Bearer {token}"}
    return build


@pytest.fixture
def register(client, auth_headers):
    """Emite una credencial vía HTTP y retorna la respuesta."""
    async def run(data: bytes = HELLO, metadata: dict = None, owner_key: str = OWNER,
                  issuer: str = ISSUER, filename: str = "diploma.txt", mime: str = "text/plain"):
        form = {"metadata": json.dumps(metadata or METADATA)}
        if owner_key:
            form["ownerKey"] = owner_key
        return await client.post(
            "/v1/credentials/register",
            files={"file": (filename, data, mime)},
            data=form,
            headers=auth_headers(issuer),
        )
    return run


@pytest.fixture
def wallet():
    """Wallet local con llave privada real para firmar retos de login."""
    return Account.from_key("0x" + "11" * 32)
