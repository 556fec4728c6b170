from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from credvault.core.clock import utcnow

Base = declarative_base()


class CredentialRow(Base):
    """
    Registro de credencial. Nunca se borra: la reserva en estado `draft`
    preserva la unicidad de la huella aunque la saga falle.
    """
    __tablename__ = "credentials"

    fingerprint = Column(String(66), primary_key=True)
    status = Column(String(20), nullable=False, index=True)
    blob_locator = Column(String, nullable=True)

    # Descriptores (JSON portable entre SQLite y PostgreSQL)
    credential_metadata = Column("metadata", JSON, nullable=False)
    file_descriptor = Column(JSON, nullable=False)
    ledger_anchor = Column(JSON, nullable=True)

    # Control de acceso
    owner_key = Column(String(42), nullable=False, index=True)
    issuer_key = Column(String(42), nullable=False, index=True)
    viewers = Column(JSON, nullable=False, default=list)
    # Índice desnormalizado ",0xabc,0xdef," para filtrar por viewer con LIKE
    viewer_index = Column(Text, nullable=False, default=",")
    search_text = Column(Text, nullable=False, default="")

    # Auditoría
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    verification_count = Column(Integer, nullable=False, default=0)

    # Desactivación
    active = Column(Boolean, nullable=False, default=True)
    deactivation_reason = Column(String(500), nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
    deactivated_by = Column(String(42), nullable=True)

    failure_reason = Column(String, nullable=True)

    # Concurrencia optimista
    version = Column(Integer, nullable=False, default=1)


class AuditEventRow(Base):
    """Bitácora append-only. Las filas jamás se actualizan."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(66), nullable=False)
    kind = Column(String(32), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    actor_key = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_audit_events_fingerprint_timestamp", "fingerprint", "timestamp"),
    )
