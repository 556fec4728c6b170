import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credvault.core.clock import utcnow
from credvault.db.models import AuditEventRow, CredentialRow
from credvault.db.session import transaction
from credvault.models.credential import AuditEvent, AuditKind, VERIFICATION_KINDS
from credvault.models.pagination import Page, clamp_pagination

logger = logging.getLogger(__name__)


async def append_event(
    session: AsyncSession,
    fingerprint: str,
    kind: AuditKind,
    actor_key: str,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditEventRow:
    """
    Inserta un evento dentro de la transacción abierta por el llamador.
    El timestamp es autoritativo del servidor y monótono por huella.
    """
    last = (
        await session.execute(
            select(func.max(AuditEventRow.timestamp)).where(AuditEventRow.fingerprint == fingerprint)
        )
    ).scalar()
    timestamp = utcnow()
    if last is not None and timestamp <= last:
        timestamp = last + timedelta(microseconds=1)

    row = AuditEventRow(
        fingerprint=fingerprint,
        kind=kind.value,
        timestamp=timestamp,
        actor_key=actor_key,
        payload=payload or {},
    )
    session.add(row)
    await session.flush()
    return row


def to_event(row: AuditEventRow) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        fingerprint=row.fingerprint,
        kind=AuditKind(row.kind),
        timestamp=row.timestamp,
        actor_key=row.actor_key,
        payload=row.payload or {},
    )


class AuditRepository:
    """Consultas sobre la bitácora y escritura de eventos de verificación."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record_verification(
        self,
        fingerprint: str,
        kind: AuditKind,
        actor_key: str,
        payload: Dict[str, Any],
    ) -> AuditEvent:
        """
        Evento de verificación + incremento del contador en la misma transacción.
        El UPDATE va primero: toma el lock de la fila y serializa eventos concurrentes.
        Si no hay registro local (huella no registrada) solo se inserta el evento.
        """
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(CredentialRow)
                .where(CredentialRow.fingerprint == fingerprint)
                .values(verification_count=CredentialRow.verification_count + 1)
                .execution_options(synchronize_session=False)
            )
            row = await append_event(session, fingerprint, kind, actor_key, payload)
            return to_event(row)

    async def record_event(
        self, fingerprint: str, kind: AuditKind, actor_key: str, payload: Dict[str, Any]
    ) -> AuditEvent:
        """Eventos sin mutación de estado (p. ej. DOWNLOADED)."""
        async with transaction(self.session_factory) as session:
            row = await append_event(session, fingerprint, kind, actor_key, payload)
            return to_event(row)

    async def query(
        self,
        fingerprint: str,
        kinds: Optional[Sequence[AuditKind]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        actor_key: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        page, limit = clamp_pagination(page, limit)
        filters = [AuditEventRow.fingerprint == fingerprint]
        if kinds:
            filters.append(AuditEventRow.kind.in_([k.value for k in kinds]))
        if since is not None:
            filters.append(AuditEventRow.timestamp >= since)
        if until is not None:
            filters.append(AuditEventRow.timestamp <= until)
        if actor_key:
            filters.append(AuditEventRow.actor_key == actor_key)

        async with transaction(self.session_factory) as session:
            total = (
                await session.execute(select(func.count()).select_from(AuditEventRow).where(*filters))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(AuditEventRow)
                    .where(*filters)
                    .order_by(AuditEventRow.timestamp.desc(), AuditEventRow.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()
        return Page.build([to_event(r) for r in rows], total, page, limit)

    async def count(self, fingerprint: str, kinds: Sequence[AuditKind] = VERIFICATION_KINDS) -> int:
        async with transaction(self.session_factory) as session:
            return (
                await session.execute(
                    select(func.count())
                    .select_from(AuditEventRow)
                    .where(
                        AuditEventRow.fingerprint == fingerprint,
                        AuditEventRow.kind.in_([k.value for k in kinds]),
                    )
                )
            ).scalar_one()

    async def verification_stats(self, fingerprint: str) -> Dict[str, Any]:
        """Conteo, verificadores distintos y última verificación, desde el stream."""
        kinds = [k.value for k in VERIFICATION_KINDS]
        async with transaction(self.session_factory) as session:
            count, distinct, last = (
                await session.execute(
                    select(
                        func.count(AuditEventRow.id),
                        func.count(func.distinct(AuditEventRow.actor_key)),
                        func.max(AuditEventRow.timestamp),
                    ).where(AuditEventRow.fingerprint == fingerprint, AuditEventRow.kind.in_(kinds))
                )
            ).one()
        return {"verificationCount": count, "distinctVerifiers": distinct, "lastVerifiedAt": last}

    async def count_failures_since(self, fingerprint: str, since: datetime) -> int:
        async with transaction(self.session_factory) as session:
            return (
                await session.execute(
                    select(func.count())
                    .select_from(AuditEventRow)
                    .where(
                        AuditEventRow.fingerprint == fingerprint,
                        AuditEventRow.kind == AuditKind.VERIFICATION_FAILED.value,
                        AuditEventRow.timestamp >= since,
                    )
                )
            ).scalar_one()

    async def suspicious_fingerprints(self, since: datetime, threshold: int) -> List[Dict[str, Any]]:
        """Huellas con >= `threshold` verificaciones fallidas desde `since`."""
        failures = func.count(AuditEventRow.id).label("failures")
        async with transaction(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(
                        AuditEventRow.fingerprint,
                        failures,
                        func.max(AuditEventRow.timestamp).label("last_attempt"),
                    )
                    .where(
                        AuditEventRow.kind == AuditKind.VERIFICATION_FAILED.value,
                        AuditEventRow.timestamp >= since,
                    )
                    .group_by(AuditEventRow.fingerprint)
                    .having(failures >= threshold)
                    .order_by(failures.desc())
                )
            ).all()
        return [
            {"fingerprint": fp, "failedAttempts": n, "lastAttemptAt": last}
            for fp, n, last in rows
        ]
