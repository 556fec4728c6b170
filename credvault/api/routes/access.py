from fastapi import APIRouter, Depends

from credvault.api.dependencies import fingerprint_param, get_container, get_principal
from credvault.container import ServiceContainer
from credvault.core.security import Principal
from credvault.schemas.access_dtos import AccessResponse, GrantRequest, RevokeRequest, TransferRequest

router = APIRouter(prefix="/v1/credentials", tags=["Access"])


@router.post("/{fingerprint}/access/grant", response_model=AccessResponse)
async def grant_access(
    body: GrantRequest,
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    """Idempotente: re-conceder la misma capacidad no genera evento."""
    record = await container.access.grant(principal, fingerprint, body.wallet_key, body.capability)
    return AccessResponse.from_record(record)


@router.post("/{fingerprint}/access/revoke", response_model=AccessResponse)
async def revoke_access(
    body: RevokeRequest,
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    record = await container.access.revoke(principal, fingerprint, body.wallet_key)
    return AccessResponse.from_record(record)


@router.post("/{fingerprint}/transfer", response_model=AccessResponse)
async def transfer_ownership(
    body: TransferRequest,
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    """Irreversible para el llamador: el owner anterior pierde todo acceso implícito."""
    record = await container.access.transfer(principal, fingerprint, body.new_owner_key)
    return AccessResponse.from_record(record)
