from fastapi import APIRouter, Depends

from credvault.api.dependencies import get_container, get_principal
from credvault.container import ServiceContainer
from credvault.core.security import Principal
from credvault.schemas.auth_dtos import (
    ChallengeRequest,
    ChallengeResponse,
    MeResponse,
    SignatureRequest,
    TokenResponse,
)

router = APIRouter(prefix="/v1/auth", tags=["Auth"])


@router.post("/challenge", response_model=ChallengeResponse, summary="Obtener nonce de login")
async def request_challenge(body: ChallengeRequest, container: ServiceContainer = Depends(get_container)):
    """El cliente debe firmar `message` ("login:" + nonce) con su wallet."""
    return await container.auth.issue_challenge(body.wallet_key)


@router.post("/verify", response_model=TokenResponse, summary="Canjear firma por token de sesión")
async def verify_signature(body: SignatureRequest, container: ServiceContainer = Depends(get_container)):
    return await container.auth.verify(body.wallet_key, body.signature)


@router.post("/refresh", response_model=TokenResponse, summary="Renovar token de sesión")
async def refresh_token(
    principal: Principal = Depends(get_principal),
    container: ServiceContainer = Depends(get_container),
):
    return container.auth.refresh(principal)


@router.get("/me", response_model=MeResponse)
async def whoami(principal: Principal = Depends(get_principal)):
    return MeResponse(wallet_key=principal.wallet_key, role=principal.role, expires_at=principal.expires_at)
