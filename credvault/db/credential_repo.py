import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credvault.core.clock import utcnow
from credvault.core.exceptions import (
    DuplicateFingerprint,
    InvalidTransition,
    NotFound,
    VersionConflict,
)
from credvault.db.audit_repo import append_event
from credvault.db.models import AuditEventRow, CredentialRow
from credvault.db.session import transaction
from credvault.models.credential import (
    ALLOWED_TRANSITIONS,
    PENDING_STATUSES,
    AccessSet,
    AuditKind,
    CredentialMetadata,
    CredentialRecord,
    CredentialStatus,
    FileDescriptor,
    LedgerAnchor,
    VERIFICATION_KINDS,
)
from credvault.models.pagination import Page, clamp_pagination

logger = logging.getLogger(__name__)


@dataclass
class EventDraft:
    """Evento de auditoría que acompaña a una mutación (misma transacción)."""
    kind: AuditKind
    actor_key: str
    payload: Dict[str, Any] = field(default_factory=dict)


def _viewer_index(access: AccessSet) -> str:
    keys = access.viewer_keys()
    return "," + ",".join(keys) + ("," if keys else "")


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def to_record(row: CredentialRow) -> CredentialRecord:
    return CredentialRecord(
        fingerprint=row.fingerprint,
        blob_locator=row.blob_locator,
        metadata=CredentialMetadata.model_validate(row.credential_metadata),
        file_descriptor=FileDescriptor.model_validate(row.file_descriptor),
        access=AccessSet(
            owner_key=row.owner_key,
            issuer_key=row.issuer_key,
            authorized_viewers=row.viewers or [],
        ),
        ledger_anchor=LedgerAnchor.model_validate(row.ledger_anchor) if row.ledger_anchor else None,
        status=CredentialStatus(row.status),
        created_at=row.created_at,
        verification_count=row.verification_count,
        active=row.active,
        deactivation_reason=row.deactivation_reason,
        deactivated_at=row.deactivated_at,
        deactivated_by=row.deactivated_by,
        failure_reason=row.failure_reason,
        version=row.version,
    )


class CredentialRepository:
    """
    Gateway del record store para credenciales.
    Toda mutación usa concurrencia optimista (`version`) y escribe su evento
    de auditoría en la misma transacción. Las sentencias de escritura van
    antes que las lecturas para que SQLite no escale locks compartidos.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, fingerprint: str) -> Optional[CredentialRecord]:
        async with transaction(self.session_factory) as session:
            row = await session.get(CredentialRow, fingerprint)
            return to_record(row) if row else None

    async def require(self, fingerprint: str) -> CredentialRecord:
        record = await self.get(fingerprint)
        if record is None:
            raise NotFound()
        return record

    async def exists(self, fingerprint: str) -> bool:
        async with transaction(self.session_factory) as session:
            found = (
                await session.execute(
                    select(CredentialRow.fingerprint).where(CredentialRow.fingerprint == fingerprint)
                )
            ).first()
            return found is not None

    async def reserve(self, record: CredentialRecord, event: EventDraft) -> CredentialRecord:
        """
        Inserta el `draft` junto con el evento CREATED. Es la frontera de unicidad:
        de N emisiones concurrentes de la misma huella solo una gana.
        """
        async with transaction(self.session_factory) as session:
            row = CredentialRow(
                fingerprint=record.fingerprint,
                status=CredentialStatus.DRAFT.value,
                credential_metadata=record.metadata.model_dump(mode="json", by_alias=True),
                file_descriptor=record.file_descriptor.model_dump(mode="json", by_alias=True),
                owner_key=record.access.owner_key,
                issuer_key=record.access.issuer_key,
                viewers=[],
                viewer_index=",",
                search_text=record.metadata.search_text(),
                created_at=record.created_at,
                updated_at=record.created_at,
                verification_count=0,
                active=True,
                version=1,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError:
                logger.info(f"🔒 Reserva rechazada, huella ya registrada: {record.fingerprint}")
                raise DuplicateFingerprint()

            # Verificaciones previas a la emisión ya cuentan para el contador
            row.verification_count = await self._count_verifications(session, record.fingerprint)
            await session.flush()

            await append_event(session, record.fingerprint, event.kind, event.actor_key, event.payload)
            return to_record(row)

    async def transition(
        self,
        fingerprint: str,
        expected_version: int,
        target: CredentialStatus,
        event: EventDraft,
        **changes: Any,
    ) -> CredentialRecord:
        """Cambio de estado validado contra las transiciones permitidas."""
        sources = [s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets]
        values = dict(changes)
        values["status"] = target.value
        return await self._update(fingerprint, expected_version, values, event, allowed_from=sources, target=target)

    async def update_access(
        self, fingerprint: str, expected_version: int, access: AccessSet, event: EventDraft
    ) -> CredentialRecord:
        values = {
            "owner_key": access.owner_key,
            "issuer_key": access.issuer_key,
            "viewers": [e.model_dump(mode="json", by_alias=True) for e in access.authorized_viewers],
            "viewer_index": _viewer_index(access),
        }
        return await self._update(fingerprint, expected_version, values, event)

    async def deactivate(
        self, fingerprint: str, expected_version: int, reason: str, event: EventDraft
    ) -> CredentialRecord:
        values = {
            "active": False,
            "deactivation_reason": reason,
            "deactivated_at": utcnow(),
            "deactivated_by": event.actor_key,
        }
        return await self._update(fingerprint, expected_version, values, event)

    async def _update(
        self,
        fingerprint: str,
        expected_version: int,
        values: Dict[str, Any],
        event: EventDraft,
        allowed_from: Optional[Iterable[CredentialStatus]] = None,
        target: Optional[CredentialStatus] = None,
    ) -> CredentialRecord:
        async with transaction(self.session_factory) as session:
            # 1. Escritura condicionada a la versión (y al estado origen)
            stmt = (
                update(CredentialRow)
                .where(
                    CredentialRow.fingerprint == fingerprint,
                    CredentialRow.version == expected_version,
                )
                .values(**values, version=expected_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            allowed = [s.value for s in allowed_from] if allowed_from is not None else None
            if allowed is not None:
                stmt = stmt.where(CredentialRow.status.in_(allowed))
            result = await session.execute(stmt)

            # 2. Diagnóstico si no se aplicó
            if result.rowcount == 0:
                row = await session.get(CredentialRow, fingerprint)
                if row is None:
                    raise NotFound()
                if allowed is not None and row.status not in allowed:
                    raise InvalidTransition(
                        f"Status transition {row.status} -> {target.value} is not allowed"
                    )
                logger.warning(
                    f"⚠️ Conflicto de versión en {fingerprint}: esperada {expected_version}, actual {row.version}"
                )
                raise VersionConflict()

            # 3. Evento en la misma transacción
            await append_event(session, fingerprint, event.kind, event.actor_key, event.payload)

            row = await session.get(CredentialRow, fingerprint, populate_existing=True)
            return to_record(row)

    async def list_visible(
        self,
        wallet_key: Optional[str],
        page: int = 1,
        limit: int = 20,
        query: Optional[str] = None,
        include_inactive: bool = False,
    ) -> Page:
        """
        Credenciales donde la wallet es owner, issuer o viewer activo
        (`wallet_key=None` lista todo, uso de admin). Orden: createdAt desc.
        """
        page, limit = clamp_pagination(page, limit)
        filters = []
        if not include_inactive:
            filters.append(CredentialRow.active.is_(True))
        if wallet_key is not None:
            filters.append(
                or_(
                    CredentialRow.owner_key == wallet_key,
                    CredentialRow.issuer_key == wallet_key,
                    CredentialRow.viewer_index.like(f"%,{wallet_key},%"),
                )
            )
        if query:
            term = _escape_like(query.strip().lower())
            filters.append(CredentialRow.search_text.like(f"%{term}%", escape="\\"))

        async with transaction(self.session_factory) as session:
            total = (
                await session.execute(select(func.count()).select_from(CredentialRow).where(*filters))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(CredentialRow)
                    .where(*filters)
                    .order_by(CredentialRow.created_at.desc(), CredentialRow.fingerprint)
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()
        return Page.build([to_record(r) for r in rows], total, page, limit)

    async def list_pending(self, limit: int = 100) -> List[CredentialRecord]:
        """Registros en `draft` o `blob-stored` para el loop de recuperación."""
        async with transaction(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(CredentialRow)
                    .where(CredentialRow.status.in_([s.value for s in PENDING_STATUSES]))
                    .order_by(CredentialRow.created_at)
                    .limit(limit)
                )
            ).scalars().all()
        return [to_record(r) for r in rows]

    async def ping(self) -> bool:
        async with transaction(self.session_factory) as session:
            await session.execute(select(1))
        return True

    @staticmethod
    async def _count_verifications(session: AsyncSession, fingerprint: str) -> int:
        return (
            await session.execute(
                select(func.count())
                .select_from(AuditEventRow)
                .where(
                    AuditEventRow.fingerprint == fingerprint,
                    AuditEventRow.kind.in_([k.value for k in VERIFICATION_KINDS]),
                )
            )
        ).scalar_one()
