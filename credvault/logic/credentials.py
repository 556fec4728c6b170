import logging
from typing import Optional, Tuple
from urllib.parse import urlencode

from credvault.core.exceptions import AlreadyDeactivated, CryptoError, Forbidden, NotFound, ValidationFailed
from credvault.core.identifiers import normalize_fingerprint
from credvault.core.security import Principal
from credvault.crypto.fingerprint import fingerprint as compute_fingerprint
from credvault.crypto.manager import EncryptionManager
from credvault.db.audit_repo import AuditRepository
from credvault.db.credential_repo import CredentialRepository, EventDraft
from credvault.infrastructure.blob.gateway import BlobGateway
from credvault.logic.access import authorize
from credvault.models.credential import AuditKind, Capability, CredentialRecord
from credvault.models.pagination import Page

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 10
MAX_REASON_LENGTH = 500


class CredentialService:
    """Lecturas protegidas por acceso, descarga descifrada, desactivación y payload QR."""

    def __init__(
        self,
        repo: CredentialRepository,
        events: AuditRepository,
        blobs: BlobGateway,
        cipher: EncryptionManager,
        verification_base_url: str,
    ):
        self.repo = repo
        self.events = events
        self.blobs = blobs
        self.cipher = cipher
        self.verification_base_url = verification_base_url

    async def _authorized(self, caller: Principal, fingerprint: str, capability: Capability) -> CredentialRecord:
        record = await self.repo.require(normalize_fingerprint(fingerprint))
        if not authorize(caller, record, capability):
            logger.warning(f"🛡️ {caller.wallet_key} sin capacidad {capability.value} sobre {record.fingerprint}")
            raise Forbidden(f"Caller lacks {capability.value} access to this credential")
        return record

    async def detail(self, caller: Principal, fingerprint: str) -> CredentialRecord:
        return await self._authorized(caller, fingerprint, Capability.VIEW)

    async def list_for(
        self, caller: Principal, page: int, limit: int, query: Optional[str] = None
    ) -> Page:
        wallet = None if caller.is_admin else caller.wallet_key
        return await self.repo.list_visible(wallet, page=page, limit=limit, query=query)

    async def download(self, caller: Principal, fingerprint: str) -> Tuple[CredentialRecord, bytes]:
        record = await self._authorized(caller, fingerprint, Capability.DOWNLOAD)
        if not record.blob_locator:
            raise NotFound("Credential body is not stored yet")

        # 1. Blob cifrado -> plaintext
        sealed = await self.blobs.fetch(record.blob_locator)
        plaintext = self.cipher.unseal(sealed)

        # 2. Integridad: el cuerpo debe volver a producir la huella
        if compute_fingerprint(plaintext) != record.fingerprint:
            logger.critical(f"🛡️ ALERTA DE INTEGRIDAD: el blob de {record.fingerprint} no coincide con su huella")
            raise CryptoError("Decrypted body does not match its fingerprint")

        await self.events.record_event(
            record.fingerprint, AuditKind.DOWNLOADED, caller.wallet_key, {"byteSize": len(plaintext)}
        )
        return record, plaintext

    async def deactivate(self, caller: Principal, fingerprint: str, reason: str) -> CredentialRecord:
        record = await self.repo.require(normalize_fingerprint(fingerprint))
        allowed = caller.is_admin or caller.wallet_key in (record.access.owner_key, record.access.issuer_key)
        if not allowed:
            raise Forbidden("Only the owner, the issuer or an admin can deactivate a credential")

        reason = (reason or "").strip()
        if not MIN_REASON_LENGTH <= len(reason) <= MAX_REASON_LENGTH:
            raise ValidationFailed(
                f"Deactivation reason must be {MIN_REASON_LENGTH}-{MAX_REASON_LENGTH} characters"
            )
        if not record.active:
            raise AlreadyDeactivated()

        updated = await self.repo.deactivate(
            record.fingerprint,
            record.version,
            reason,
            EventDraft(AuditKind.DEACTIVATED, caller.wallet_key, {"reason": reason}),
        )
        logger.info(f"✅ Credencial {record.fingerprint} desactivada por {caller.wallet_key}")
        return updated

    async def qr_payload(self, caller: Principal, fingerprint: str) -> dict:
        record = await self._authorized(caller, fingerprint, Capability.VIEW)
        tx_id = record.ledger_anchor.tx_id if record.ledger_anchor else None
        params = {"hash": record.fingerprint}
        if tx_id:
            params["tx"] = tx_id
        return {
            "fingerprint": record.fingerprint,
            "txId": tx_id,
            "verificationUrl": f"{self.verification_base_url}?{urlencode(params)}",
        }
