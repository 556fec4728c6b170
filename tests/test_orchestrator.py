import asyncio
from datetime import timedelta

import pytest

from credvault.core.clock import utcnow
from credvault.core.exceptions import (
    CryptoError,
    DuplicateFingerprint,
    LedgerTimeout,
    PayloadTooLarge,
    SagaTimeout,
    UnsupportedMediaType,
    ValidationFailed,
)
from credvault.core.security import Principal
from credvault.crypto.fingerprint import fingerprint as compute_fingerprint
from credvault.db.credential_repo import EventDraft
from credvault.infrastructure.ledger.interface import RegistrationRequest
from credvault.logic.orchestrator import PLAINTEXT_UNAVAILABLE, IssuanceRequest, parse_metadata
from credvault.models.credential import (
    AccessSet,
    AuditKind,
    CredentialMetadata,
    CredentialRecord,
    CredentialStatus,
    FileDescriptor,
    Role,
)
from tests.factories import HELLO, HELLO_FP, ISSUER, METADATA, OWNER

ISSUER_PRINCIPAL = Principal(wallet_key=ISSUER, role=Role.ISSUER, expires_at=utcnow())


def issuance(data: bytes = HELLO, **overrides) -> IssuanceRequest:
    values = dict(
        issuer=ISSUER_PRINCIPAL,
        file_bytes=data,
        original_name="diploma.txt",
        mime_type="text/plain",
        metadata=METADATA,
        owner_key=OWNER,
    )
    values.update(overrides)
    return IssuanceRequest(**values)


async def kinds_for(container, fingerprint: str):
    events = await container.events.query(fingerprint, limit=100)
    return [e.kind for e in reversed(events.items)]


@pytest.mark.asyncio
async def test_issue_runs_saga_to_anchored(container, ledger_client):
    record = await container.orchestrator.issue(issuance())

    assert record.fingerprint == HELLO_FP
    assert record.status == CredentialStatus.LEDGER_ANCHORED
    assert record.blob_locator.startswith("local_")
    assert record.ledger_anchor.confirmed
    assert record.ledger_anchor.block_height >= 1
    assert record.access.owner_key == OWNER
    assert record.access.issuer_key == ISSUER
    assert await kinds_for(container, HELLO_FP) == [
        AuditKind.CREATED, AuditKind.BLOB_STORED, AuditKind.LEDGER_ANCHORED
    ]
    assert len(ledger_client.transactions_for(HELLO_FP)) == 1

    # El blob almacenado está cifrado y vuelve al plaintext original
    sealed = await container.blobs.fetch(record.blob_locator)
    assert sealed != HELLO
    assert container.cipher.unseal(sealed) == HELLO
    assert not await container.saga_lock.is_locked(HELLO_FP)


@pytest.mark.asyncio
async def test_owner_defaults_to_issuer(container):
    record = await container.orchestrator.issue(issuance(owner_key=None))
    assert record.access.owner_key == ISSUER


@pytest.mark.asyncio
async def test_duplicate_bytes_are_rejected(container):
    await container.orchestrator.issue(issuance())
    with pytest.raises(DuplicateFingerprint):
        await container.orchestrator.issue(issuance(metadata={**METADATA, "recipientName": "Other"}))


@pytest.mark.asyncio
async def test_concurrent_issuance_has_one_winner(container, ledger_client):
    results = await asyncio.gather(
        *[container.orchestrator.issue(issuance()) for _ in range(5)],
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, CredentialRecord)]
    losers = [r for r in results if isinstance(r, DuplicateFingerprint)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert len(ledger_client.transactions_for(HELLO_FP)) == 1


@pytest.mark.asyncio
async def test_validation_happens_before_any_write(container):
    orchestrator = container.orchestrator
    with pytest.raises(ValidationFailed):
        await orchestrator.issue(issuance(data=b""))
    with pytest.raises(UnsupportedMediaType):
        await orchestrator.issue(issuance(mime_type="application/x-msdownload"))
    with pytest.raises(PayloadTooLarge):
        await orchestrator.issue(issuance(data=b"x" * (container.settings.MAX_FILE_BYTES + 1)))
    with pytest.raises(ValidationFailed):
        await orchestrator.issue(issuance(metadata={**METADATA, "credentialKind": "badge"}))
    with pytest.raises(ValidationFailed):
        await orchestrator.issue(issuance(owner_key="not-a-wallet"))

    assert not await container.credentials.exists(HELLO_FP)


@pytest.mark.asyncio
async def test_mime_parameters_are_ignored(container):
    record = await container.orchestrator.issue(issuance(mime_type="text/plain; charset=utf-8"))
    assert record.file_descriptor.mime_type == "text/plain"


def test_parse_metadata_messages_are_deterministic():
    with pytest.raises(ValidationFailed) as first:
        parse_metadata({**METADATA, "recipientName": ""})
    with pytest.raises(ValidationFailed) as second:
        parse_metadata({**METADATA, "recipientName": ""})
    assert first.value.message == second.value.message
    assert first.value.message.startswith("metadata.recipientName")

    with pytest.raises(ValidationFailed):
        parse_metadata("{not json")
    with pytest.raises(ValidationFailed):
        parse_metadata("[1, 2]")


@pytest.mark.asyncio
async def test_ledger_outage_leaves_record_blob_stored(container, ledger_client):
    ledger_client.reachable = False

    with pytest.raises(LedgerTimeout):
        await container.orchestrator.issue(issuance())

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.BLOB_STORED
    assert record.blob_locator
    assert not await container.saga_lock.is_locked(HELLO_FP)


@pytest.mark.asyncio
async def test_recovery_completes_interrupted_saga(container, ledger_client):
    ledger_client.reachable = False
    with pytest.raises(LedgerTimeout):
        await container.orchestrator.issue(issuance())
    locator = (await container.credentials.get(HELLO_FP)).blob_locator

    ledger_client.reachable = True
    assert await container.recovery.run_once() == 1

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.LEDGER_ANCHORED
    assert record.blob_locator == locator
    assert len(ledger_client.transactions_for(HELLO_FP)) == 1


@pytest.mark.asyncio
async def test_recovery_adopts_anchor_submitted_before_crash(container, ledger_client):
    ledger_client.reachable = False
    with pytest.raises(LedgerTimeout):
        await container.orchestrator.issue(issuance())
    ledger_client.reachable = True

    # El proceso alcanzó a enviar la transacción pero no a registrarla
    record = await container.credentials.get(HELLO_FP)
    tx_id = await ledger_client.submit_registration(
        RegistrationRequest(HELLO_FP, record.blob_locator, "0x" + "0" * 64, OWNER, "degree")
    )

    await container.recovery.run_once()

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.LEDGER_ANCHORED
    assert record.ledger_anchor.tx_id == tx_id
    assert len(ledger_client.transactions_for(HELLO_FP)) == 1


@pytest.mark.asyncio
async def test_recovery_skips_fingerprints_with_live_saga(container, ledger_client):
    ledger_client.reachable = False
    with pytest.raises(LedgerTimeout):
        await container.orchestrator.issue(issuance())
    ledger_client.reachable = True

    assert await container.saga_lock.acquire(HELLO_FP, "live-saga")
    assert await container.recovery.run_once() == 0
    assert (await container.credentials.get(HELLO_FP)).status == CredentialStatus.BLOB_STORED


@pytest.mark.asyncio
async def test_stale_draft_without_plaintext_is_failed(container):
    old = utcnow() - timedelta(seconds=container.settings.SAGA_DEADLINE_SECONDS + 5)
    await container.credentials.reserve(
        CredentialRecord(
            fingerprint=HELLO_FP,
            metadata=CredentialMetadata.model_validate(METADATA),
            file_descriptor=FileDescriptor(original_name="diploma.txt", byte_size=6, mime_type="text/plain"),
            access=AccessSet(owner_key=OWNER, issuer_key=ISSUER),
            created_at=old,
        ),
        EventDraft(AuditKind.CREATED, ISSUER),
    )

    assert await container.recovery.run_once() == 0

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.FAILED
    assert record.failure_reason == PLAINTEXT_UNAVAILABLE
    assert AuditKind.REGISTRATION_FAILED in await kinds_for(container, HELLO_FP)


@pytest.mark.asyncio
async def test_crypto_failure_marks_record_failed(container, monkeypatch):
    def broken_seal(plaintext):
        raise CryptoError("Encryption failed")

    monkeypatch.setattr(container.cipher, "seal", broken_seal)

    with pytest.raises(CryptoError):
        await container.orchestrator.issue(issuance())

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.FAILED
    assert record.failure_reason == "CRYPTO_ERROR"
    assert await kinds_for(container, HELLO_FP) == [AuditKind.CREATED, AuditKind.REGISTRATION_FAILED]

    # La huella sigue reservada: los mismos bytes no pueden re-emitirse
    with pytest.raises(DuplicateFingerprint):
        await container.orchestrator.issue(issuance())


async def stalled_upload(data: bytes) -> str:
    await asyncio.sleep(5)
    raise AssertionError("upload should have been cancelled")


@pytest.mark.asyncio
async def test_deadline_leaves_draft_for_recovery(container, ledger_client, monkeypatch):
    monkeypatch.setattr(container.orchestrator, "deadline", 0.05)
    monkeypatch.setattr(container.orchestrator.blobs, "upload", stalled_upload)

    with pytest.raises(SagaTimeout):
        await container.orchestrator.issue(issuance())

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.DRAFT
    assert await kinds_for(container, HELLO_FP) == [AuditKind.CREATED]
    assert not await container.saga_lock.is_locked(HELLO_FP)

    # Con el blob store de vuelta, la recuperación termina la saga
    monkeypatch.undo()
    assert await container.recovery.run_once() == 1

    record = await container.credentials.get(HELLO_FP)
    assert record.status == CredentialStatus.LEDGER_ANCHORED
    assert len(ledger_client.transactions_for(HELLO_FP)) == 1


@pytest.mark.asyncio
async def test_deadline_is_a_retryable_timeout_over_http(client, register, container, monkeypatch):
    monkeypatch.setattr(container.orchestrator, "deadline", 0.05)
    monkeypatch.setattr(container.orchestrator.blobs, "upload", stalled_upload)

    response = await register()
    assert response.status_code == 504
    assert response.json()["error"] == "TIMEOUT"
    assert response.json()["retryable"] is True
    assert (await container.credentials.get(HELLO_FP)).status == CredentialStatus.DRAFT


@pytest.mark.asyncio
@pytest.mark.parametrize("settings", [{"MAX_FILE_BYTES": 16}], indirect=True)
async def test_register_rejects_file_over_limit(client, register, container):
    response = await register(data=b"x" * 64)
    assert response.status_code == 413
    assert response.json()["error"] == "PAYLOAD_TOO_LARGE"
    assert not await container.credentials.exists(compute_fingerprint(b"x" * 64))
