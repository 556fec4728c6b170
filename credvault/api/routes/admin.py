from fastapi import APIRouter, Depends, Query

from credvault.api.dependencies import get_container, require_roles
from credvault.container import ServiceContainer
from credvault.core.security import Principal
from credvault.models.credential import Role
from credvault.schemas.audit_dtos import SuspiciousActivityResponse

router = APIRouter(prefix="/v1/admin", tags=["Admin"])


@router.get("/suspicious-activity", response_model=SuspiciousActivityResponse)
async def suspicious_activity(
    page: int = Query(1),
    limit: int = Query(20),
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    container: ServiceContainer = Depends(get_container),
):
    """Huellas con ráfagas de verificaciones fallidas dentro de la ventana configurada."""
    result = await container.audit.suspicious_activity(page, limit)
    return SuspiciousActivityResponse(
        items=result.items,
        total_items=result.total_items,
        total_pages=result.total_pages,
        page=result.page,
        limit=result.limit,
        window_minutes=container.settings.SUSPICIOUS_WINDOW_MINUTES,
        threshold=container.settings.SUSPICIOUS_THRESHOLD,
    )
