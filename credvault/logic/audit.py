import logging
from datetime import datetime, timedelta
from typing import List, Optional

from credvault.core.clock import to_naive_utc, utcnow
from credvault.core.exceptions import Forbidden
from credvault.core.identifiers import normalize_fingerprint, normalize_wallet
from credvault.core.security import Principal
from credvault.db.audit_repo import AuditRepository
from credvault.db.credential_repo import CredentialRepository
from credvault.logic.access import authorize
from credvault.models.credential import AuditKind, Capability, CredentialRecord
from credvault.models.pagination import Page, clamp_pagination

logger = logging.getLogger(__name__)


class AuditService:
    """Consulta de la bitácora, estadísticas y detección de actividad sospechosa."""

    def __init__(
        self,
        credentials: CredentialRepository,
        events: AuditRepository,
        suspicious_window_minutes: int = 10,
        suspicious_threshold: int = 5,
    ):
        self.credentials = credentials
        self.events = events
        self.window = timedelta(minutes=suspicious_window_minutes)
        self.threshold = suspicious_threshold

    async def trail(
        self,
        caller: Principal,
        fingerprint: str,
        kinds: Optional[List[AuditKind]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        actor_key: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        fingerprint = normalize_fingerprint(fingerprint)
        record = await self.credentials.require(fingerprint)
        if not authorize(caller, record, Capability.VIEW):
            raise Forbidden("Caller has no access to this credential's audit trail")

        actor = normalize_wallet(actor_key) if actor_key and actor_key != "anonymous" else actor_key
        result = await self.events.query(
            fingerprint,
            kinds=kinds,
            since=to_naive_utc(since),
            until=to_naive_utc(until),
            actor_key=actor,
            page=page,
            limit=limit,
        )
        return {
            "items": result.items,
            "totalItems": result.total_items,
            "totalPages": result.total_pages,
            "page": result.page,
            "limit": result.limit,
            "summary": await self.summary(record),
        }

    async def summary(self, record: CredentialRecord) -> dict:
        """
        Estadísticas calculadas desde el stream de eventos.
        `verificationCount` del registro es la réplica autoritativa y debe coincidir.
        """
        stats = await self.events.verification_stats(record.fingerprint)
        if stats["verificationCount"] != record.verification_count:
            logger.critical(
                f"🛡️ Invariante de conteo rota en {record.fingerprint}: "
                f"registro={record.verification_count} stream={stats['verificationCount']}"
            )
        stats["ageInDays"] = (utcnow() - record.created_at).days
        stats["suspiciousActivity"] = await self.is_suspicious(record.fingerprint)
        return stats

    async def is_suspicious(self, fingerprint: str) -> bool:
        since = utcnow() - self.window
        failures = await self.events.count_failures_since(fingerprint, since)
        return failures >= self.threshold

    async def suspicious_activity(self, page: int = 1, limit: int = 20) -> Page:
        """Listado (admin) de huellas con ráfagas de verificaciones fallidas."""
        page, limit = clamp_pagination(page, limit)
        flagged = await self.events.suspicious_fingerprints(utcnow() - self.window, self.threshold)
        start = (page - 1) * limit
        return Page.build(flagged[start:start + limit], len(flagged), page, limit)
