from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from credvault.api.dependencies import fingerprint_param, get_container, get_principal
from credvault.container import ServiceContainer
from credvault.core.security import Principal
from credvault.models.credential import AuditKind
from credvault.schemas.audit_dtos import AuditTrailResponse

router = APIRouter(prefix="/v1/credentials", tags=["Audit"])


@router.get("/{fingerprint}/audit", response_model=AuditTrailResponse, summary="Bitácora de la credencial")
async def audit_trail(
    fingerprint: str = Depends(fingerprint_param),
    kind: Optional[List[AuditKind]] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    actor: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.audit.trail(
        principal, fingerprint, kinds=kind, since=since, until=until, actor_key=actor, page=page, limit=limit
    )
