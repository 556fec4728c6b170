from datetime import datetime
from typing import List, Optional

from credvault.models.credential import AuditEvent, CamelModel


class AuditSummary(CamelModel):
    verification_count: int
    distinct_verifiers: int
    age_in_days: int
    last_verified_at: Optional[datetime] = None
    suspicious_activity: bool = False


class AuditTrailResponse(CamelModel):
    items: List[AuditEvent]
    total_items: int
    total_pages: int
    page: int
    limit: int
    summary: AuditSummary


class SuspiciousEntry(CamelModel):
    fingerprint: str
    failed_attempts: int
    last_attempt_at: datetime


class SuspiciousActivityResponse(CamelModel):
    items: List[SuspiciousEntry]
    total_items: int
    total_pages: int
    page: int
    limit: int
    window_minutes: int
    threshold: int
