from datetime import datetime
from typing import List, Optional

from pydantic import Field

from credvault.models.credential import (
    AccessEntry,
    CamelModel,
    CredentialMetadata,
    CredentialRecord,
    CredentialStatus,
    FileDescriptor,
)


class LedgerAnchorView(CamelModel):
    tx_id: str
    block_height: int
    gas_consumed: int
    anchored_at: Optional[datetime] = None
    confirmed: bool = True
    explorer_url: Optional[str] = None


class AccessView(CamelModel):
    owner_key: str
    issuer_key: str
    authorized_viewers: List[AccessEntry]


class CredentialView(CamelModel):
    """Detalle de credencial para llamadores con acceso `view`."""
    fingerprint: str
    blob_locator: Optional[str] = None
    metadata: CredentialMetadata
    file_descriptor: FileDescriptor
    access: AccessView
    ledger_anchor: Optional[LedgerAnchorView] = None
    status: CredentialStatus
    created_at: datetime
    verification_count: int
    active: bool
    deactivation_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_record(cls, record: CredentialRecord, explorer_url: str = "") -> "CredentialView":
        anchor = None
        if record.ledger_anchor:
            anchor = LedgerAnchorView(
                **record.ledger_anchor.model_dump(),
                explorer_url=f"{explorer_url.rstrip('/')}/tx/{record.ledger_anchor.tx_id}" if explorer_url else None,
            )
        return cls(
            fingerprint=record.fingerprint,
            blob_locator=record.blob_locator,
            metadata=record.metadata,
            file_descriptor=record.file_descriptor,
            access=AccessView(
                owner_key=record.access.owner_key,
                issuer_key=record.access.issuer_key,
                authorized_viewers=record.access.active_viewers(),
            ),
            ledger_anchor=anchor,
            status=record.status,
            created_at=record.created_at,
            verification_count=record.verification_count,
            active=record.active,
            deactivation_reason=record.deactivation_reason,
            deactivated_at=record.deactivated_at,
            deactivated_by=record.deactivated_by,
            failure_reason=record.failure_reason,
        )


class CredentialPage(CamelModel):
    items: List[CredentialView]
    total_items: int
    total_pages: int
    page: int
    limit: int


class IssuanceResponse(CamelModel):
    fingerprint: str
    locator: Optional[str] = None
    tx_id: Optional[str] = None
    block_height: Optional[int] = None
    gas_consumed: Optional[int] = None
    status: CredentialStatus

    @classmethod
    def from_record(cls, record: CredentialRecord) -> "IssuanceResponse":
        anchor = record.ledger_anchor
        return cls(
            fingerprint=record.fingerprint,
            locator=record.blob_locator,
            tx_id=anchor.tx_id if anchor else None,
            block_height=anchor.block_height if anchor else None,
            gas_consumed=anchor.gas_consumed if anchor else None,
            status=record.status,
        )


class DeactivateRequest(CamelModel):
    reason: str = Field(..., description="Motivo de la desactivación (10-500 caracteres)")


class QRPayloadResponse(CamelModel):
    fingerprint: str
    tx_id: Optional[str] = None
    verification_url: str
