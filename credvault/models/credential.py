import enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from credvault.core.clock import utcnow


class CamelModel(BaseModel):
    """Base de los modelos de dominio: snake_case en Python, camelCase en el cable."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CredentialStatus(str, enum.Enum):
    DRAFT = "draft"
    BLOB_STORED = "blob-stored"
    LEDGER_ANCHORED = "ledger-anchored"
    FAILED = "failed"


# Transiciones permitidas por el gateway; cualquier otra se rechaza.
ALLOWED_TRANSITIONS = {
    CredentialStatus.DRAFT: {CredentialStatus.BLOB_STORED, CredentialStatus.FAILED},
    CredentialStatus.BLOB_STORED: {CredentialStatus.LEDGER_ANCHORED, CredentialStatus.FAILED},
    CredentialStatus.LEDGER_ANCHORED: set(),
    CredentialStatus.FAILED: set(),
}

PENDING_STATUSES = (CredentialStatus.DRAFT, CredentialStatus.BLOB_STORED)


class CredentialKind(str, enum.Enum):
    DEGREE = "degree"
    DIPLOMA = "diploma"
    CERTIFICATE = "certificate"
    TRANSCRIPT = "transcript"
    OTHER = "other"


class Capability(str, enum.Enum):
    VIEW = "view"
    DOWNLOAD = "download"


class Role(str, enum.Enum):
    ADMIN = "admin"
    ISSUER = "issuer"
    VERIFIER = "verifier"
    OWNER = "owner"


class AuditKind(str, enum.Enum):
    CREATED = "CREATED"
    BLOB_STORED = "BLOB_STORED"
    LEDGER_ANCHORED = "LEDGER_ANCHORED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_REVOKED = "ACCESS_REVOKED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"
    VERIFIED = "VERIFIED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    DOWNLOADED = "DOWNLOADED"
    DEACTIVATED = "DEACTIVATED"


VERIFICATION_KINDS = (AuditKind.VERIFIED, AuditKind.VERIFICATION_FAILED)


class CredentialMetadata(CamelModel):
    """Descriptor estructurado de la credencial emitida."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "recipientName": "Jane",
                "recipientId": "STU001",
                "issuingAuthority": "Acme U",
                "credentialKind": "degree",
                "issueDate": "2024-01-15",
            }
        },
    )

    recipient_name: str = Field(..., min_length=1, max_length=100)
    recipient_id: str = Field(..., min_length=1, max_length=50)
    issuing_authority: str = Field(..., min_length=1, max_length=200)
    credential_kind: CredentialKind
    issue_date: date
    expiry_date: Optional[date] = None
    programme: Optional[str] = Field(None, max_length=200)
    grade: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def validate_dates(self):
        if self.issue_date > utcnow().date():
            raise ValueError("issueDate cannot be in the future")
        if self.expiry_date is not None and self.expiry_date <= self.issue_date:
            raise ValueError("expiryDate must be after issueDate")
        return self

    def search_text(self) -> str:
        """Texto plano indexable para la búsqueda por subcadena."""
        parts = [self.recipient_name, self.recipient_id, self.issuing_authority,
                 self.programme or "", self.description or ""]
        return "\n".join(parts).lower()


class FileDescriptor(CamelModel):
    original_name: str
    byte_size: int
    mime_type: str


class AccessEntry(CamelModel):
    wallet_key: str
    capability: Capability
    granted_at: datetime
    granted_by: str
    revoked_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.revoked_at is None


class AccessSet(CamelModel):
    owner_key: str
    issuer_key: str
    authorized_viewers: List[AccessEntry] = Field(default_factory=list)

    def active_viewers(self) -> List[AccessEntry]:
        return [e for e in self.authorized_viewers if e.active]

    def find(self, wallet_key: str) -> Optional[AccessEntry]:
        for entry in self.authorized_viewers:
            if entry.wallet_key == wallet_key:
                return entry
        return None

    def viewer_keys(self) -> List[str]:
        return [e.wallet_key for e in self.active_viewers()]


class LedgerAnchor(CamelModel):
    tx_id: str
    block_height: int
    gas_consumed: int
    anchored_at: Optional[datetime] = None
    confirmed: bool = True


class CredentialRecord(CamelModel):
    fingerprint: str
    blob_locator: Optional[str] = None
    metadata: CredentialMetadata
    file_descriptor: FileDescriptor
    access: AccessSet
    ledger_anchor: Optional[LedgerAnchor] = None
    status: CredentialStatus = CredentialStatus.DRAFT
    created_at: datetime
    verification_count: int = 0
    active: bool = True
    deactivation_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    failure_reason: Optional[str] = None
    version: int = 1


class AuditEvent(CamelModel):
    id: int
    fingerprint: str
    kind: AuditKind
    timestamp: datetime
    actor_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
