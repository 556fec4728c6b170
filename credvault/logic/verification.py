import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from credvault.core.exceptions import LedgerRejected, LedgerTimeout, ValidationFailed
from credvault.core.identifiers import is_fingerprint, normalize_fingerprint
from credvault.core.security import Principal
from credvault.crypto.fingerprint import fingerprint as compute_fingerprint
from credvault.db.audit_repo import AuditRepository
from credvault.db.credential_repo import CredentialRepository
from credvault.infrastructure.ledger.gateway import LedgerGateway
from credvault.infrastructure.ledger.interface import AnchorLookup
from credvault.logic.access import authorize, redact_wallet
from credvault.logic.audit import AuditService
from credvault.models.credential import AuditKind, Capability, CredentialRecord, CredentialStatus

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"

NOT_REGISTERED = "NOT_REGISTERED"
PENDING_ANCHOR = "PENDING_ANCHOR"
LEDGER_ONLY = "LEDGER_ONLY"
FINGERPRINT_MISMATCH = "FINGERPRINT_MISMATCH"
ANCHOR_MISMATCH = "ANCHOR_MISMATCH"
DEACTIVATED = "DEACTIVATED"
REGISTRATION_FAILED = "REGISTRATION_FAILED"


@dataclass
class VerificationContext:
    principal: Optional[Principal] = None
    method: str = "hash"
    verifier_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def actor(self) -> str:
        return self.principal.wallet_key if self.principal else ANONYMOUS


def extract_fingerprint_from_qr(payload: str) -> str:
    """
    Acepta (a) huella desnuda, (b) JSON {"fingerprint": ...},
    (c) URL con parámetro `hash` (la que generan los códigos QR).
    """
    text = (payload or "").strip()
    if is_fingerprint(text):
        return normalize_fingerprint(text)

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            raise ValidationFailed("QR payload is not valid JSON")
        if isinstance(data, dict) and isinstance(data.get("fingerprint"), str):
            return normalize_fingerprint(data["fingerprint"])
        raise ValidationFailed("QR payload JSON must contain a fingerprint")

    parsed = urlparse(text)
    if parsed.scheme and parsed.netloc:
        values = parse_qs(parsed.query).get("hash")
        if values:
            return normalize_fingerprint(values[0])
        raise ValidationFailed("QR payload URL lacks a hash parameter")

    raise ValidationFailed("Unrecognised QR payload")


class VerificationService:
    """
    ¿Es auténtica esta credencial? Cruza el registro local con el ledger.
    Toda verificación emite VERIFIED / VERIFICATION_FAILED y suma al contador.
    """

    def __init__(
        self,
        credentials: CredentialRepository,
        events: AuditRepository,
        ledger: LedgerGateway,
        audit: AuditService,
        explorer_url: str = "",
    ):
        self.credentials = credentials
        self.events = events
        self.ledger = ledger
        self.audit = audit
        self.explorer_url = explorer_url.rstrip("/")

    async def verify_file(self, data: bytes, ctx: VerificationContext) -> Dict[str, Any]:
        if not data:
            raise ValidationFailed("File is empty")
        recomputed = compute_fingerprint(data)
        return await self._verify(recomputed, ctx, recomputed=recomputed)

    async def verify_fingerprint(self, fingerprint: str, ctx: VerificationContext) -> Dict[str, Any]:
        return await self._verify(normalize_fingerprint(fingerprint), ctx)

    async def verify_qr(self, payload: str, ctx: VerificationContext) -> Dict[str, Any]:
        return await self._verify(extract_fingerprint_from_qr(payload), ctx)

    async def _cross_check(self, fingerprint: str) -> Optional[AnchorLookup]:
        """Consulta al ledger; None si no es alcanzable (se usa el anclaje local)."""
        try:
            return await self.ledger.lookup(fingerprint)
        except (LedgerTimeout, LedgerRejected) as e:
            logger.warning(f"⚠️ Ledger no disponible para verificar {fingerprint}: {e.kind}")
            return None

    def _anchor_view(self, tx_id: Optional[str], block_height: Optional[int], **extra) -> Dict[str, Any]:
        view = {"txId": tx_id, "blockHeight": block_height, **extra}
        if self.explorer_url and tx_id:
            view["explorerUrl"] = f"{self.explorer_url}/tx/{tx_id}"
        return view

    async def _verify(
        self, fingerprint: str, ctx: VerificationContext, recomputed: Optional[str] = None
    ) -> Dict[str, Any]:
        # 1. Registro local + cruce con el ledger
        record = await self.credentials.get(fingerprint)
        lookup = await self._cross_check(fingerprint)

        # 2. Decisión
        valid, reason, anchor = self._decide(fingerprint, record, lookup, recomputed)

        # 3. Evento + contador (misma transacción)
        await self.events.record_verification(
            fingerprint,
            AuditKind.VERIFIED if valid else AuditKind.VERIFICATION_FAILED,
            ctx.actor,
            {
                "method": ctx.method,
                "result": reason or "VALID",
                "verifierIp": ctx.verifier_ip,
                "userAgent": ctx.user_agent,
                "ledgerCrossChecked": lookup is not None,
            },
        )

        result: Dict[str, Any] = {
            "valid": valid,
            "fingerprint": fingerprint,
            "ledgerAnchor": anchor,
            "reason": reason,
            "ledgerCrossChecked": lookup is not None,
        }

        # 4. Actividad sospechosa
        suspicious = await self.audit.is_suspicious(fingerprint)
        if suspicious:
            logger.warning(f"🛡️ Actividad sospechosa sobre {fingerprint} (último intento desde {ctx.verifier_ip})")

        # 5. Divulgación según acceso
        if record is not None:
            record = await self.credentials.get(fingerprint) or record
            summary = self._summary_for(ctx.principal, record)
            if summary is not None:
                result["recordSummary"] = summary
                if suspicious:
                    result["warning"] = "SUSPICIOUS_ACTIVITY"

        outcome = "✅" if valid else "❌"
        logger.info(f"{outcome} Verificación {ctx.method} de {fingerprint}: {reason or 'VALID'}")
        return result

    def _decide(self, fingerprint, record: Optional[CredentialRecord], lookup: Optional[AnchorLookup], recomputed):
        if record is None:
            if lookup is not None and lookup.anchored:
                anchor = self._anchor_view(lookup.tx_id, lookup.block_height, anchorTimestamp=lookup.anchor_timestamp)
                return True, LEDGER_ONLY, anchor
            return False, NOT_REGISTERED, None

        local = record.ledger_anchor
        anchor = None
        if local is not None:
            anchor = self._anchor_view(
                local.tx_id,
                local.block_height,
                gasConsumed=local.gas_consumed,
                confirmed=local.confirmed,
            )

        if not record.active:
            return False, DEACTIVATED, anchor
        if record.status == CredentialStatus.FAILED:
            return False, REGISTRATION_FAILED, anchor
        if record.status != CredentialStatus.LEDGER_ANCHORED or local is None or not local.confirmed:
            return False, PENDING_ANCHOR, anchor
        if recomputed is not None and not hmac.compare_digest(record.fingerprint, recomputed):
            return False, FINGERPRINT_MISMATCH, anchor

        if lookup is not None:
            if not lookup.anchored:
                return False, PENDING_ANCHOR, anchor
            if lookup.tx_id and not hmac.compare_digest(lookup.tx_id.lower(), local.tx_id.lower()):
                logger.critical(f"🛡️ Anclaje divergente para {fingerprint}: local={local.tx_id} ledger={lookup.tx_id}")
                return False, ANCHOR_MISMATCH, anchor
            if not lookup.active:
                return False, DEACTIVATED, anchor
            anchor["anchorTimestamp"] = lookup.anchor_timestamp

        return True, None, anchor

    @staticmethod
    def _summary_for(principal: Optional[Principal], record: CredentialRecord) -> Optional[Dict[str, Any]]:
        """Sin acceso: nada. Viewers: owner redactado. Owner, issuer y admin: completo."""
        if not authorize(principal, record, Capability.VIEW):
            return None
        full = principal.is_admin or principal.wallet_key in (record.access.owner_key, record.access.issuer_key)
        return {
            "metadata": record.metadata.model_dump(mode="json", by_alias=True, exclude_none=True),
            "status": record.status.value,
            "ownerKey": record.access.owner_key if full else redact_wallet(record.access.owner_key),
            "issuerKey": record.access.issuer_key,
            "createdAt": record.created_at.isoformat(),
            "verificationCount": record.verification_count,
            "active": record.active,
        }
