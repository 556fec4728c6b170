from typing import Any, Dict, Optional

from credvault.models.credential import CamelModel


class VerificationResponse(CamelModel):
    """
    Resultado de verificación. Los campos ausentes no se serializan:
    sin acceso, el llamador solo ve {valid, fingerprint, ledgerAnchor, reason}.
    """
    valid: bool
    fingerprint: str
    ledger_anchor: Optional[Dict[str, Any]] = None
    record_summary: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    ledger_cross_checked: Optional[bool] = None
    warning: Optional[str] = None
