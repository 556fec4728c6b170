import pytest

from credvault.core.clock import utcnow
from credvault.core.exceptions import Forbidden, NotFound, ValidationFailed
from credvault.core.security import Principal
from credvault.logic.access import authorize, redact_wallet
from credvault.logic.orchestrator import IssuanceRequest
from credvault.models.credential import AuditKind, Capability, Role
from tests.factories import ADMIN, HELLO, HELLO_FP, ISSUER, METADATA, NEW_OWNER, OTHER, OWNER, VIEWER


def principal(wallet: str, role: Role = Role.OWNER) -> Principal:
    return Principal(wallet_key=wallet, role=role, expires_at=utcnow())


@pytest.fixture
def issued(container):
    async def run():
        return await container.orchestrator.issue(
            IssuanceRequest(
                issuer=principal(ISSUER, Role.ISSUER),
                file_bytes=HELLO,
                original_name="diploma.txt",
                mime_type="text/plain",
                metadata=METADATA,
                owner_key=OWNER,
            )
        )
    return run


@pytest.mark.asyncio
async def test_authorization_matrix(container, issued):
    record = await issued()
    record = await container.access.grant(principal(OWNER), HELLO_FP, VIEWER, Capability.VIEW)

    assert authorize(principal(OWNER), record, Capability.DOWNLOAD)
    assert authorize(principal(ISSUER, Role.ISSUER), record, Capability.DOWNLOAD)
    assert authorize(principal(VIEWER), record, Capability.VIEW)
    assert not authorize(principal(VIEWER), record, Capability.DOWNLOAD)
    assert authorize(principal(ADMIN, Role.ADMIN), record, Capability.VIEW)
    assert not authorize(principal(ADMIN, Role.ADMIN), record, Capability.DOWNLOAD)
    assert not authorize(principal(OTHER), record, Capability.VIEW)
    assert not authorize(None, record, Capability.VIEW)


@pytest.mark.asyncio
async def test_upgrading_capability_replaces_entry(container, issued):
    await issued()
    await container.access.grant(principal(OWNER), HELLO_FP, VIEWER, Capability.VIEW)
    record = await container.access.grant(principal(OWNER), HELLO_FP, VIEWER, Capability.DOWNLOAD)

    assert len(record.access.authorized_viewers) == 1
    assert record.access.find(VIEWER).capability == Capability.DOWNLOAD


@pytest.mark.asyncio
async def test_regrant_after_revoke_reactivates_entry(container, issued):
    await issued()
    await container.access.grant(principal(OWNER), HELLO_FP, VIEWER)
    revoked = await container.access.revoke(principal(OWNER), HELLO_FP, VIEWER)
    assert revoked.access.find(VIEWER).revoked_at is not None

    record = await container.access.grant(principal(OWNER), HELLO_FP, VIEWER)
    assert record.access.find(VIEWER).active
    assert len(record.access.authorized_viewers) == 1


@pytest.mark.asyncio
async def test_only_owner_mutates_access(container, issued):
    await issued()
    with pytest.raises(Forbidden):
        await container.access.grant(principal(ISSUER, Role.ISSUER), HELLO_FP, VIEWER)
    with pytest.raises(Forbidden):
        await container.access.grant(principal(ADMIN, Role.ADMIN), HELLO_FP, VIEWER)
    with pytest.raises(Forbidden):
        await container.access.transfer(principal(VIEWER), HELLO_FP, VIEWER)


@pytest.mark.asyncio
async def test_access_rules_edge_cases(container, issued):
    await issued()
    owner = principal(OWNER)

    with pytest.raises(ValidationFailed):
        await container.access.grant(owner, HELLO_FP, OWNER)
    with pytest.raises(ValidationFailed):
        await container.access.grant(owner, HELLO_FP, ISSUER)
    with pytest.raises(Forbidden):
        await container.access.revoke(owner, HELLO_FP, ISSUER)
    with pytest.raises(ValidationFailed):
        await container.access.transfer(owner, HELLO_FP, OWNER)
    with pytest.raises(ValidationFailed):
        await container.access.grant(owner, HELLO_FP, "0x123")
    with pytest.raises(NotFound):
        await container.access.grant(owner, "0x" + "1" * 64, VIEWER)

    # Revocar a quien no tiene acceso es un no-op sin evento
    before = (await container.events.query(HELLO_FP)).total_items
    await container.access.revoke(owner, HELLO_FP, OTHER)
    assert (await container.events.query(HELLO_FP)).total_items == before


@pytest.mark.asyncio
async def test_transfer_drops_new_owner_from_viewers(container, issued):
    await issued()
    await container.access.grant(principal(OWNER), HELLO_FP, NEW_OWNER)
    record = await container.access.transfer(principal(OWNER), HELLO_FP, NEW_OWNER)

    assert record.access.owner_key == NEW_OWNER
    assert record.access.find(NEW_OWNER) is None
    assert record.access.issuer_key == ISSUER

    events = await container.events.query(HELLO_FP, kinds=[AuditKind.OWNERSHIP_TRANSFERRED])
    assert events.items[0].payload == {"previousOwner": OWNER, "newOwner": NEW_OWNER}


def test_redact_wallet():
    assert redact_wallet(OWNER) == "0xbbbbbb…"
