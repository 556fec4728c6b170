import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from credvault.config import Settings
from credvault.core.clock import utcnow
from credvault.core.exceptions import (
    CredVaultError,
    CryptoError,
    DuplicateFingerprint,
    LedgerRejected,
    PayloadTooLarge,
    SagaTimeout,
    UnsupportedMediaType,
    ValidationFailed,
)
from credvault.core.identifiers import normalize_wallet
from credvault.core.security import Principal
from credvault.crypto.fingerprint import fingerprint as compute_fingerprint
from credvault.crypto.fingerprint import metadata_digest
from credvault.crypto.manager import EncryptionManager
from credvault.db.credential_repo import CredentialRepository, EventDraft
from credvault.infrastructure.blob.gateway import BlobGateway
from credvault.infrastructure.ledger.gateway import LedgerGateway
from credvault.infrastructure.ledger.interface import RegistrationRequest
from credvault.infrastructure.redis_lock import SagaLock
from credvault.models.credential import (
    AccessSet,
    AuditKind,
    CredentialMetadata,
    CredentialRecord,
    CredentialStatus,
    FileDescriptor,
    LedgerAnchor,
)

logger = logging.getLogger(__name__)

PLAINTEXT_UNAVAILABLE = "PLAINTEXT_UNAVAILABLE"


@dataclass
class IssuanceRequest:
    issuer: Principal
    file_bytes: bytes
    original_name: str
    mime_type: str
    metadata: Union[str, Dict[str, Any], CredentialMetadata]
    owner_key: Optional[str] = None


@dataclass
class PendingOperation:
    """Estado transitorio de una saga en curso (solo vive mientras corre)."""
    operation_id: str
    fingerprint: str
    step: str = "validate"
    last_error: Optional[str] = None


def parse_metadata(raw: Union[str, Dict[str, Any], CredentialMetadata]) -> CredentialMetadata:
    """Parsea y valida los metadatos; cualquier fallo es VALIDATION_ERROR determinista."""
    if isinstance(raw, CredentialMetadata):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            raise ValidationFailed("metadata must be a JSON object")
    if not isinstance(raw, dict):
        raise ValidationFailed("metadata must be a JSON object")
    try:
        return CredentialMetadata.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "__root__")
        message = first.get("msg", "invalid value").removeprefix("Value error, ")
        raise ValidationFailed(f"metadata{'.' + location if location else ''}: {message}")


class CredentialOrchestrator:
    """
    Saga de emisión con semántica exactly-once sobre tres efectos externos:
    1. Validate  2. Fingerprint  3. Reserve (draft + CREATED)
    4. Encrypt & store blob (BLOB_STORED)  5. Anchor on ledger (LEDGER_ANCHORED)
    No hay rollback distribuido: la reserva es la frontera de unicidad y el
    loop de recuperación reanuda lo que quede en `draft` o `blob-stored`.
    """

    def __init__(
        self,
        repo: CredentialRepository,
        blobs: BlobGateway,
        ledger: LedgerGateway,
        cipher: EncryptionManager,
        saga_lock: SagaLock,
        settings: Settings,
    ):
        self.repo = repo
        self.blobs = blobs
        self.ledger = ledger
        self.cipher = cipher
        self.saga_lock = saga_lock
        self.settings = settings
        self.deadline = settings.SAGA_DEADLINE_SECONDS
        self._workers = asyncio.Semaphore(settings.MAX_SAGA_WORKERS)
        # Plaintext de drafts en curso; se pierde con el proceso
        self._staging: Dict[str, bytes] = {}

    # ------------------------------------------------------------------ #
    # 1. Validación
    # ------------------------------------------------------------------ #
    def validate_file(self, data: bytes, mime_type: str) -> str:
        if len(data) > self.settings.MAX_FILE_BYTES:
            raise PayloadTooLarge(f"File exceeds {self.settings.MAX_FILE_BYTES} bytes")
        if not data:
            raise ValidationFailed("File is empty")
        base_type = (mime_type or "").split(";", 1)[0].strip().lower()
        if base_type not in self.settings.ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType(f"File type {base_type or 'unknown'} is not allowed")
        return base_type

    # ------------------------------------------------------------------ #
    # Saga en vivo
    # ------------------------------------------------------------------ #
    async def issue(self, request: IssuanceRequest) -> CredentialRecord:
        # 1. Validate
        metadata = parse_metadata(request.metadata)
        mime_type = self.validate_file(request.file_bytes, request.mime_type)
        issuer_key = request.issuer.wallet_key
        owner_key = normalize_wallet(request.owner_key) if request.owner_key else issuer_key

        # 2. Fingerprint + probe
        fp = compute_fingerprint(request.file_bytes)
        op = PendingOperation(operation_id=str(uuid.uuid4()), fingerprint=fp, step="fingerprint")
        if await self.repo.exists(fp):
            raise DuplicateFingerprint()

        # El lock se toma antes de reservar: el loop de recuperación nunca ve
        # un draft recién creado cuya saga sigue viva
        if not await self.saga_lock.acquire(fp, op.operation_id):
            logger.info(f"🔒 Emisión concurrente de {fp} en curso")
            raise DuplicateFingerprint()

        try:
            # 3. Reserve
            op.step = "reserve"
            now = utcnow()
            draft = CredentialRecord(
                fingerprint=fp,
                metadata=metadata,
                file_descriptor=FileDescriptor(
                    original_name=request.original_name or "credential",
                    byte_size=len(request.file_bytes),
                    mime_type=mime_type,
                ),
                access=AccessSet(owner_key=owner_key, issuer_key=issuer_key),
                created_at=now,
            )
            record = await self.repo.reserve(
                draft,
                EventDraft(AuditKind.CREATED, issuer_key, {"ownerKey": owner_key, "operationId": op.operation_id}),
            )
            self._staging[fp] = request.file_bytes
            logger.info(f"🛡️ Reserva {fp} creada por {issuer_key} (op {op.operation_id})")

            # 4-5. Pasos externos bajo deadline global
            return await self._run(record, request.file_bytes, op)
        finally:
            await self.saga_lock.release(fp, op.operation_id)

    async def _run(self, record: CredentialRecord, plaintext: bytes, op: PendingOperation) -> CredentialRecord:
        try:
            return await asyncio.wait_for(self._advance_with_worker(record, plaintext, op), timeout=self.deadline)
        except asyncio.TimeoutError:
            logger.error(f"⏱️ Saga {op.operation_id} excedió {self.deadline}s en el paso {op.step}; queda para recuperación")
            raise SagaTimeout()

    async def _advance_with_worker(self, record, plaintext, op) -> CredentialRecord:
        async with self._workers:
            return await self._advance(record, plaintext, op)

    async def _advance(
        self, record: CredentialRecord, plaintext: Optional[bytes], op: PendingOperation
    ) -> CredentialRecord:
        fp = record.fingerprint
        actor = record.access.issuer_key
        try:
            # 4. Encrypt & store blob
            if record.status == CredentialStatus.DRAFT:
                op.step = "blob"
                sealed = self.cipher.seal(plaintext)
                locator = await self.blobs.upload(sealed)
                record = await self.repo.transition(
                    fp,
                    record.version,
                    CredentialStatus.BLOB_STORED,
                    EventDraft(AuditKind.BLOB_STORED, actor, {"locator": locator, "operationId": op.operation_id}),
                    blob_locator=locator,
                )
                logger.info(f"✅ [{op.step}] {fp} -> {locator}")

            # 5. Anchor on ledger (el gateway adopta anclajes previos)
            if record.status == CredentialStatus.BLOB_STORED:
                op.step = "ledger"
                receipt = await self.ledger.anchor(
                    RegistrationRequest(
                        fingerprint=fp,
                        locator=record.blob_locator,
                        metadata_digest=metadata_digest(record.metadata.model_dump(mode="json", by_alias=True)),
                        owner_key=record.access.owner_key,
                        credential_kind=record.metadata.credential_kind.value,
                    )
                )
                anchor = LedgerAnchor(
                    tx_id=receipt.tx_id,
                    block_height=receipt.block_height,
                    gas_consumed=receipt.gas_consumed,
                    anchored_at=utcnow(),
                    confirmed=True,
                )
                record = await self.repo.transition(
                    fp,
                    record.version,
                    CredentialStatus.LEDGER_ANCHORED,
                    EventDraft(
                        AuditKind.LEDGER_ANCHORED,
                        actor,
                        {"txId": receipt.tx_id, "blockHeight": receipt.block_height, "operationId": op.operation_id},
                    ),
                    ledger_anchor=anchor.model_dump(mode="json", by_alias=True),
                )
                logger.info(f"✅ [{op.step}] {fp} anclado en {receipt.tx_id} (bloque {receipt.block_height})")

        except (CryptoError, LedgerRejected) as e:
            # Terminal: el registro queda `failed` con su evento
            op.last_error = e.kind
            await self._mark_failed(fp, e.kind, op.step, actor)
            self._staging.pop(fp, None)
            raise
        except CredVaultError as e:
            # Reintentable: el estado refleja el último paso confirmado
            op.last_error = e.kind
            logger.warning(f"🔄 Saga {op.operation_id} detenida en {op.step} ({e.kind}); queda para recuperación")
            raise

        self._staging.pop(fp, None)
        return record

    async def _mark_failed(self, fingerprint: str, reason: str, step: str, actor: str) -> None:
        record = await self.repo.require(fingerprint)
        if record.status not in (CredentialStatus.DRAFT, CredentialStatus.BLOB_STORED):
            return
        await self.repo.transition(
            fingerprint,
            record.version,
            CredentialStatus.FAILED,
            EventDraft(AuditKind.REGISTRATION_FAILED, actor, {"reason": reason, "step": step}),
            failure_reason=reason,
        )
        logger.error(f"❌ Emisión de {fingerprint} fallida en {step}: {reason}")

    # ------------------------------------------------------------------ #
    # Reanudación (loop de recuperación)
    # ------------------------------------------------------------------ #
    async def resume(self, record: CredentialRecord) -> Optional[CredentialRecord]:
        """
        Reanuda un registro pendiente. El llamador ya posee el lock de la huella.
        Un draft sin plaintext disponible solo puede fallar: se marca `failed`
        cuando su antigüedad supera el deadline de la saga.
        """
        op = PendingOperation(operation_id=str(uuid.uuid4()), fingerprint=record.fingerprint, step="resume")
        plaintext = None
        if record.status == CredentialStatus.DRAFT:
            plaintext = self._staging.get(record.fingerprint)
            if plaintext is None:
                age = (utcnow() - record.created_at).total_seconds()
                if age > self.deadline:
                    await self._mark_failed(
                        record.fingerprint, PLAINTEXT_UNAVAILABLE, "blob", record.access.issuer_key
                    )
                return None
            if compute_fingerprint(plaintext) != record.fingerprint:
                await self._mark_failed(record.fingerprint, "CRYPTO_ERROR", "blob", record.access.issuer_key)
                self._staging.pop(record.fingerprint, None)
                return None

        logger.info(f"🔄 Reanudando {record.fingerprint} desde {record.status.value}")
        return await self._run(record, plaintext, op)
