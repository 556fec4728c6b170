from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from credvault.api.dependencies import get_container, verification_context
from credvault.api.routes.credentials import read_limited
from credvault.container import ServiceContainer
from credvault.core.exceptions import ValidationFailed
from credvault.logic.verification import NOT_REGISTERED
from credvault.schemas.verification_dtos import VerificationResponse

router = APIRouter(prefix="/v1/credentials", tags=["Verification"])


@router.post(
    "/verify",
    response_model=VerificationResponse,
    response_model_exclude_none=True,
    summary="Verificar por archivo, payload QR o huella",
)
async def verify_credential(
    file: Optional[UploadFile] = File(None),
    qr_payload: Optional[str] = Form(None, alias="qrPayload"),
    fingerprint: Optional[str] = Form(None),
    context=Depends(verification_context),
    container: ServiceContainer = Depends(get_container),
):
    """Prioridad de entradas: QR > archivo > huella. Siempre responde 200."""
    service = container.verification
    if qr_payload:
        return await service.verify_qr(qr_payload, context("qr"))
    if file is not None:
        data = await read_limited(file, container.settings.MAX_FILE_BYTES)
        return await service.verify_file(data, context("upload"))
    if fingerprint:
        return await service.verify_fingerprint(fingerprint, context("hash"))
    raise ValidationFailed("Provide a file, a qrPayload or a fingerprint")


@router.get(
    "/verify/{fingerprint}",
    response_model=VerificationResponse,
    response_model_exclude_none=True,
    responses={404: {"description": "Huella no registrada"}},
    summary="Verificar por huella",
)
async def verify_by_fingerprint(
    fingerprint: str,
    context=Depends(verification_context),
    container: ServiceContainer = Depends(get_container),
):
    result = await container.verification.verify_fingerprint(fingerprint, context("hash"))
    if result["reason"] == NOT_REGISTERED:
        body = VerificationResponse.model_validate(result).model_dump(mode="json", by_alias=True, exclude_none=True)
        return JSONResponse(status_code=404, content=body)
    return result
