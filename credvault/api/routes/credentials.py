import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status

from credvault.api.dependencies import fingerprint_param, get_container, get_principal, require_roles
from credvault.container import ServiceContainer
from credvault.core.exceptions import PayloadTooLarge
from credvault.core.security import Principal
from credvault.logic.orchestrator import IssuanceRequest
from credvault.models.credential import Role
from credvault.schemas.credential_dtos import (
    CredentialPage,
    CredentialView,
    DeactivateRequest,
    IssuanceResponse,
    QRPayloadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/credentials", tags=["Credentials"])


async def read_limited(upload: UploadFile, max_bytes: int) -> bytes:
    """Lee el archivo sin pasar de `max_bytes` (+1 para detectar el exceso)."""
    data = await upload.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise PayloadTooLarge(f"File exceeds {max_bytes} bytes")
    return data


@router.post(
    "/register",
    response_model=IssuanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Emitir credencial (saga de emisión)",
)
async def register_credential(
    file: UploadFile = File(..., description="Documento original"),
    metadata: str = Form(..., description="JSON con los metadatos de la credencial"),
    owner_key: Optional[str] = Form(None, alias="ownerKey"),
    principal: Principal = Depends(require_roles(Role.ISSUER, Role.ADMIN)),
    container: ServiceContainer = Depends(get_container),
):
    """
    Valida, calcula la huella, reserva el registro, cifra y sube el blob,
    y ancla la huella en el ledger. Responde cuando el anclaje está confirmado.
    """
    data = await read_limited(file, container.settings.MAX_FILE_BYTES)
    record = await container.orchestrator.issue(
        IssuanceRequest(
            issuer=principal,
            file_bytes=data,
            original_name=file.filename or "credential",
            mime_type=file.content_type or "",
            metadata=metadata,
            owner_key=owner_key,
        )
    )
    return IssuanceResponse.from_record(record)


@router.get("", response_model=CredentialPage, summary="Listar credenciales del llamador")
async def list_credentials(
    page: int = Query(1),
    limit: int = Query(20),
    q: Optional[str] = Query(None, description="Búsqueda por subcadena en metadatos"),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    result = await container.credential_service.list_for(principal, page, limit, q)
    explorer = container.settings.LEDGER_EXPLORER_URL
    return CredentialPage(
        items=[CredentialView.from_record(r, explorer) for r in result.items],
        total_items=result.total_items,
        total_pages=result.total_pages,
        page=result.page,
        limit=result.limit,
    )


@router.get("/{fingerprint}", response_model=CredentialView)
async def get_credential(
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    record = await container.credential_service.detail(principal, fingerprint)
    return CredentialView.from_record(record, container.settings.LEDGER_EXPLORER_URL)


@router.get("/{fingerprint}/download", summary="Descargar el cuerpo descifrado")
async def download_credential(
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    record, body = await container.credential_service.download(principal, fingerprint)
    filename = quote(record.file_descriptor.original_name)
    return Response(
        content=body,
        media_type=record.file_descriptor.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{filename}",
            "X-Credential-Fingerprint": record.fingerprint,
        },
    )


@router.post("/{fingerprint}/deactivate", response_model=CredentialView)
async def deactivate_credential(
    body: DeactivateRequest,
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    record = await container.credential_service.deactivate(principal, fingerprint, body.reason)
    return CredentialView.from_record(record, container.settings.LEDGER_EXPLORER_URL)


@router.get("/{fingerprint}/qr", response_model=QRPayloadResponse, summary="Payload para código QR")
async def credential_qr(
    fingerprint: str = Depends(fingerprint_param),
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.credential_service.qr_payload(principal, fingerprint)
