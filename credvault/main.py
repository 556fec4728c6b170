import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from credvault.api.routes import access, admin, audit, auth, credentials, health, verification
from credvault.config import Settings, get_settings
from credvault.container import ServiceContainer
from credvault.core.exceptions import CredVaultError, ValidationFailed
from credvault.middleware.auth import AuthMiddleware, error_response

# Configuración de Logging Estructurado
logging.basicConfig(
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(module)s", "message": "%(message)s"}',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

HTTP_KINDS = {
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_413_CONTENT_TOO_LARGE: "PAYLOAD_TOO_LARGE",
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: "UNSUPPORTED_MEDIA_TYPE",
}


def validation_message(exc: RequestValidationError) -> str:
    """Mensaje determinista a partir del primer error de validación."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "header"))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CredVaultError)
    async def credvault_error_handler(request: Request, exc: CredVaultError):
        if exc.status_code >= 500:
            logger.error(f"🔥 {exc.kind} en {request.url.path}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(ValidationFailed(validation_message(exc)))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": HTTP_KINDS.get(exc.status_code, "HTTP_ERROR"),
                "message": str(exc.detail),
                "retryable": False,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"🔥 Error no controlado en {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "INTERNAL_ERROR",
                "message": "Internal server error",
                "retryable": False,
            },
        )


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Construye la aplicación. Si se inyecta `container` (tests), el lifespan
    no construye ni cierra dependencias: el llamador es su dueño.
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            yield
            return
        built = await ServiceContainer.build(settings)
        app.state.container = built
        built.start_background()
        logger.info(f"🚀 {settings.APP_NAME} listo ({settings.ENVIRONMENT})")
        try:
            yield
        finally:
            await built.shutdown()
            logger.info("🛑 Servicios detenidos")

    docs_enabled = settings.ENVIRONMENT != "production"
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        description="""
    ## CredVault Lifecycle Engine

    Registro de credenciales académicas con anclaje en ledger.

    ### Funcionalidades
    - **Emisión**: cifrado del documento, almacenamiento en blob store y anclaje de la huella.
    - **Verificación**: por archivo, huella o payload QR, con cruce contra el ledger.
    - **Acceso**: concesión, revocación y transferencia de propiedad.
    - **Auditoría**: bitácora inmutable y detección de actividad sospechosa.
    """,
        lifespan=lifespan,
        openapi_url="/openapi.json" if docs_enabled else None,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
    )
    if container is not None:
        app.state.container = container

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        # Configuración de Seguridad (JWT)
        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "BearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
            }
        }
        openapi_schema["security"] = [{"BearerAuth": []}]
        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi

    install_exception_handlers(app)

    # Registrar Middleware de Seguridad
    app.add_middleware(AuthMiddleware)

    # Registrar Rutas (verify antes que /{fingerprint})
    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(verification.router)
    app.include_router(admin.router)
    app.include_router(credentials.router)
    app.include_router(access.router)
    app.include_router(audit.router)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
