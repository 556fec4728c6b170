from typing import Optional


class CredVaultError(Exception):
    """
    Excepción base del motor. Cada subclase fija el `kind` del contrato de errores,
    el status HTTP con el que se expone y si el llamador puede reintentar.
    """
    kind = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    default_message = "Unexpected internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_body(self) -> dict:
        return {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationFailed(CredVaultError):
    kind = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Request validation failed"


class Unauthenticated(CredVaultError):
    kind = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


class Forbidden(CredVaultError):
    kind = "FORBIDDEN"
    status_code = 403
    default_message = "Caller is not allowed to perform this operation"


class NotFound(CredVaultError):
    kind = "NOT_FOUND"
    status_code = 404
    default_message = "Credential not found"


class DuplicateFingerprint(CredVaultError):
    kind = "DUPLICATE_FINGERPRINT"
    status_code = 409
    default_message = "A credential with this fingerprint already exists"


class PayloadTooLarge(CredVaultError):
    kind = "PAYLOAD_TOO_LARGE"
    status_code = 413
    default_message = "Uploaded payload exceeds the configured limit"


class UnsupportedMediaType(CredVaultError):
    kind = "UNSUPPORTED_MEDIA_TYPE"
    status_code = 415
    default_message = "File type is not allowed"


class RateLimited(CredVaultError):
    kind = "RATE_LIMITED"
    status_code = 429
    retryable = True
    default_message = "Request budget exhausted, retry later"

    def __init__(self, message: Optional[str] = None, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class CryptoError(CredVaultError):
    kind = "CRYPTO_ERROR"
    status_code = 500
    default_message = "Cryptographic operation failed"


class StoreUnavailable(CredVaultError):
    kind = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Record store is unavailable"


class BlobTimeout(CredVaultError):
    kind = "BLOB_TIMEOUT"
    status_code = 502
    retryable = True
    default_message = "Blob store operation exceeded its deadline"


class BlobUnavailable(CredVaultError):
    kind = "BLOB_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "No blob store provider could serve the request"


class LedgerRejected(CredVaultError):
    kind = "LEDGER_REJECTED"
    status_code = 502
    default_message = "Ledger rejected the transaction"


class LedgerTimeout(CredVaultError):
    kind = "LEDGER_TIMEOUT"
    status_code = 504
    retryable = True
    default_message = "Ledger did not confirm the transaction in time"


class VersionConflict(CredVaultError):
    kind = "VERSION_CONFLICT"
    status_code = 409
    retryable = True
    default_message = "Record was modified concurrently"


class InvalidTransition(CredVaultError):
    kind = "INVALID_TRANSITION"
    status_code = 409
    default_message = "Status transition is not allowed"


class AlreadyDeactivated(CredVaultError):
    kind = "ALREADY_DEACTIVATED"
    status_code = 409
    default_message = "Credential is already deactivated"


class SagaTimeout(CredVaultError):
    kind = "TIMEOUT"
    status_code = 504
    retryable = True
    default_message = "Issuance did not finish before its deadline; it will be resumed"


class LedgerTransientError(Exception):
    """
    Error transitorio del ledger (NETWORK_ERROR, TIMEOUT, NONCE_EXPIRED).
    Solo circula dentro del gateway: se reintenta y nunca llega al llamador.
    """

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)


class BlobProviderError(Exception):
    """Fallo transitorio de un proveedor concreto; dispara failover."""
    pass
