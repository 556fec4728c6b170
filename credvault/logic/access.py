import logging
from typing import Callable, Optional

from credvault.core.clock import utcnow
from credvault.core.exceptions import Forbidden, ValidationFailed, VersionConflict
from credvault.core.identifiers import normalize_fingerprint, normalize_wallet
from credvault.core.security import Principal
from credvault.db.credential_repo import CredentialRepository, EventDraft
from credvault.models.credential import (
    AccessEntry,
    AccessSet,
    AuditKind,
    Capability,
    CredentialRecord,
)

logger = logging.getLogger(__name__)

# Reintentos locales ante conflictos de versión en mutaciones de acceso
MAX_CONFLICT_RETRIES = 3


def authorize(principal: Optional[Principal], record: CredentialRecord, capability: Capability) -> bool:
    """
    ¿Puede `principal` ejercer `capability` sobre la credencial?
    Owner e issuer tienen acceso completo; `download` implica `view`;
    admin puede ver pero no descargar.
    """
    if principal is None:
        return False
    wallet = principal.wallet_key
    if wallet in (record.access.owner_key, record.access.issuer_key):
        return True

    entry = record.access.find(wallet)
    if entry is not None and entry.active:
        if capability == Capability.VIEW:
            return True
        return entry.capability == Capability.DOWNLOAD

    return principal.is_admin and capability == Capability.VIEW


def redact_wallet(wallet_key: str) -> str:
    return wallet_key[:8] + "…"


class AccessService:
    """Grant / revoke / transfer sobre el conjunto de acceso de una credencial."""

    def __init__(self, repo: CredentialRepository):
        self.repo = repo

    async def _mutate(
        self,
        fingerprint: str,
        caller: Principal,
        change: Callable[[CredentialRecord], Optional[tuple]],
    ) -> CredentialRecord:
        """
        Read-modify-write con concurrencia optimista. `change` retorna
        (nuevo AccessSet, EventDraft) o None si la operación es un no-op.
        """
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            record = await self.repo.require(fingerprint)
            if caller.wallet_key != record.access.owner_key:
                logger.warning(f"🛡️ {caller.wallet_key} intentó mutar el acceso de {fingerprint} sin ser owner")
                raise Forbidden("Only the current owner can change access")

            outcome = change(record)
            if outcome is None:
                return record
            access, event = outcome
            try:
                return await self.repo.update_access(fingerprint, record.version, access, event)
            except VersionConflict:
                if attempt == MAX_CONFLICT_RETRIES:
                    raise
                logger.info(f"🔄 Conflicto de versión en {fingerprint}, reintento {attempt}")
        raise VersionConflict()

    async def grant(
        self, caller: Principal, fingerprint: str, wallet_key: str, capability: Capability = Capability.VIEW
    ) -> CredentialRecord:
        fingerprint = normalize_fingerprint(fingerprint)
        target = normalize_wallet(wallet_key)

        def change(record: CredentialRecord):
            if target == record.access.owner_key:
                raise ValidationFailed("Cannot grant access to the current owner")
            if target == record.access.issuer_key:
                raise ValidationFailed("The issuer already has full access")

            access = record.access.model_copy(deep=True)
            entry = access.find(target)
            if entry is not None and entry.active and entry.capability == capability:
                # Re-grant idéntico: no-op, sin evento
                return None

            now = utcnow()
            if entry is None:
                access.authorized_viewers.append(
                    AccessEntry(wallet_key=target, capability=capability, granted_at=now, granted_by=caller.wallet_key)
                )
            else:
                entry.capability = capability
                entry.granted_at = now
                entry.granted_by = caller.wallet_key
                entry.revoked_at = None

            event = EventDraft(
                AuditKind.ACCESS_GRANTED,
                caller.wallet_key,
                {"walletKey": target, "capability": capability.value},
            )
            return access, event

        record = await self._mutate(fingerprint, caller, change)
        logger.info(f"✅ Acceso {capability.value} concedido a {target} sobre {fingerprint}")
        return record

    async def revoke(self, caller: Principal, fingerprint: str, wallet_key: str) -> CredentialRecord:
        fingerprint = normalize_fingerprint(fingerprint)
        target = normalize_wallet(wallet_key)

        def change(record: CredentialRecord):
            if target == record.access.issuer_key:
                raise Forbidden("The issuer's access cannot be revoked")
            if target == record.access.owner_key:
                raise ValidationFailed("Cannot revoke the current owner")

            access = record.access.model_copy(deep=True)
            entry = access.find(target)
            if entry is None or not entry.active:
                return None

            entry.revoked_at = utcnow()
            event = EventDraft(
                AuditKind.ACCESS_REVOKED,
                caller.wallet_key,
                {"walletKey": target, "capability": entry.capability.value},
            )
            return access, event

        record = await self._mutate(fingerprint, caller, change)
        logger.info(f"✅ Acceso revocado a {target} sobre {fingerprint}")
        return record

    async def transfer(self, caller: Principal, fingerprint: str, new_owner_key: str) -> CredentialRecord:
        fingerprint = normalize_fingerprint(fingerprint)
        new_owner = normalize_wallet(new_owner_key)

        def change(record: CredentialRecord):
            previous = record.access.owner_key
            if new_owner == previous:
                raise ValidationFailed("New owner must differ from the current owner")

            # El nuevo owner sale de la lista de viewers; el anterior no conserva acceso implícito
            access = AccessSet(
                owner_key=new_owner,
                issuer_key=record.access.issuer_key,
                authorized_viewers=[
                    e for e in record.access.authorized_viewers if e.wallet_key != new_owner
                ],
            )
            event = EventDraft(
                AuditKind.OWNERSHIP_TRANSFERRED,
                caller.wallet_key,
                {"previousOwner": previous, "newOwner": new_owner},
            )
            return access, event

        record = await self._mutate(fingerprint, caller, change)
        logger.info(f"✅ Propiedad de {fingerprint} transferida a {new_owner}")
        return record
