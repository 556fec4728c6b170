from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class AnchorReceipt:
    tx_id: str
    block_height: int
    gas_consumed: int


@dataclass
class AnchorLookup:
    """Resultado de consultar si una huella está anclada en el ledger."""
    anchored: bool
    tx_id: Optional[str] = None
    block_height: Optional[int] = None
    anchor_timestamp: Optional[int] = None
    locator: Optional[str] = None
    active: bool = True

    def to_dict(self) -> dict:
        if not self.anchored:
            return {"anchored": False}
        return {
            "anchored": True,
            "txId": self.tx_id,
            "blockHeight": self.block_height,
            "anchorTimestamp": self.anchor_timestamp,
        }


@dataclass
class RegistrationRequest:
    fingerprint: str
    locator: str
    metadata_digest: str
    owner_key: str
    credential_kind: str


class ILedgerClient(ABC):
    """
    Cliente de bajo nivel del registro en el ledger.
    Errores transitorios -> LedgerTransientError; terminales -> LedgerRejected.
    """

    signer_address: str

    @abstractmethod
    async def submit_registration(self, request: RegistrationRequest) -> str:
        """Firma y envía la transacción; retorna el tx id."""
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_id: str, confirmations: int, timeout: float) -> AnchorReceipt:
        pass

    @abstractmethod
    async def lookup(self, fingerprint: str) -> AnchorLookup:
        pass

    @abstractmethod
    async def block_height(self) -> int:
        pass

    async def close(self) -> None:
        pass
