import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from credvault.core.exceptions import (
    CredVaultError,
    PayloadTooLarge,
    RateLimited,
    StoreUnavailable,
    Unauthenticated,
)

logger = logging.getLogger(__name__)


def error_response(exc: CredVaultError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Adaptador de autenticación y presupuestos de peticiones.
    1. Rutas de infraestructura (health/docs) pasan sin más.
    2. Valida el bearer token y adjunta (walletKey, role) a `request.state.principal`.
    3. Rutas públicas: presupuesto por IP; rutas autenticadas: presupuesto por wallet.
    """

    OPEN_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}
    PUBLIC_PATHS = {"/v1/auth/challenge", "/v1/auth/verify", "/v1/credentials/verify"}
    PUBLIC_PREFIXES = ("/v1/credentials/verify/",)

    def _is_public(self, path: str) -> bool:
        return path in self.PUBLIC_PATHS or path.startswith(self.PUBLIC_PREFIXES)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        request.state.principal = None

        # 1. Skip rutas de infraestructura
        if path in self.OPEN_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        container = request.app.state.container
        settings = container.settings

        try:
            # 0. Límite de cuerpo multipart
            length = request.headers.get("Content-Length")
            if length and length.isdigit() and int(length) > settings.MAX_BODY_BYTES:
                raise PayloadTooLarge(f"Request body exceeds {settings.MAX_BODY_BYTES} bytes")

            # 2. Identidad
            public = self._is_public(path)
            auth_header = request.headers.get("Authorization")
            if auth_header and auth_header.startswith("Bearer "):
                token = auth_header.split(" ", 1)[1].strip()
                try:
                    request.state.principal = container.tokens.validate(token)
                except Unauthenticated:
                    # En rutas públicas un token inválido equivale a anónimo
                    if not public:
                        raise
            elif not public:
                raise Unauthenticated("Missing or invalid Authorization header")

            # 3. Presupuestos
            if public:
                await container.rate_limiter.hit(f"ip:{client_ip(request)}", settings.verify_ip_rate)
            else:
                await container.rate_limiter.hit(
                    f"wallet:{request.state.principal.wallet_key}", settings.wallet_rate
                )

        except CredVaultError as e:
            if e.status_code == status.HTTP_401_UNAUTHORIZED:
                logger.warning(f"🛡️ Acceso rechazado a {path}: {e.message}")
            return error_response(e)
        except RedisError as e:
            logger.error(f"Redis error in AuthMiddleware: {e}")
            return error_response(StoreUnavailable("Authorization backend unavailable"))

        return await call_next(request)
