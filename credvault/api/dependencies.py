from typing import Optional

from fastapi import Depends, Path, Request

from credvault.container import ServiceContainer
from credvault.core.exceptions import Forbidden, Unauthenticated
from credvault.core.identifiers import normalize_fingerprint
from credvault.core.security import Principal
from credvault.logic.verification import VerificationContext
from credvault.middleware.auth import client_ip
from credvault.models.credential import Role


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_optional_principal(request: Request) -> Optional[Principal]:
    return getattr(request.state, "principal", None)


def get_principal(principal: Optional[Principal] = Depends(get_optional_principal)) -> Principal:
    """
    Identidad inyectada por el AuthMiddleware.
    Si no existe, el request no pasó por una ruta autenticada.
    """
    if principal is None:
        raise Unauthenticated()
    return principal


def require_roles(*roles: Role):
    def checker(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise Forbidden(f"Role {principal.role.value} cannot perform this operation")
        return principal
    return checker


def fingerprint_param(fingerprint: str = Path(..., description="Huella 0x + 64 hex")) -> str:
    return normalize_fingerprint(fingerprint)


def verification_context(request: Request, principal: Optional[Principal] = Depends(get_optional_principal)):
    def build(method: str) -> VerificationContext:
        return VerificationContext(
            principal=principal,
            method=method,
            verifier_ip=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    return build
