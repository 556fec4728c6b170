import hashlib
import logging
import time
from typing import Dict, List

from credvault.core.exceptions import LedgerRejected, LedgerTransientError
from credvault.infrastructure.ledger.interface import (
    AnchorLookup,
    AnchorReceipt,
    ILedgerClient,
    RegistrationRequest,
)

logger = logging.getLogger(__name__)

SIMULATED_GAS = 145_000


class InMemoryLedgerClient(ILedgerClient):
    """
    Ledger simulado en proceso (LEDGER_RPC_URL=memory://).
    Mismo contrato que el registro real: un registro por huella, un bloque por transacción.
    """

    def __init__(self, signer_address: str = "0x" + "f" * 40):
        self.signer_address = signer_address.lower()
        self.height = 0
        self.documents: Dict[str, dict] = {}
        self.receipts: Dict[str, AnchorReceipt] = {}
        self.transactions: List[dict] = []
        self._nonce = 0
        self.reachable = True

    def _ensure_reachable(self) -> None:
        if not self.reachable:
            raise LedgerTransientError("NETWORK_ERROR", "simulated ledger unreachable")

    async def submit_registration(self, request: RegistrationRequest) -> str:
        self._ensure_reachable()
        if request.fingerprint in self.documents:
            raise LedgerRejected("Contract reverted: document already registered")

        self._nonce += 1
        self.height += 1
        tx_id = "0x" + hashlib.sha256(f"{request.fingerprint}:{self._nonce}".encode()).hexdigest()
        self.documents[request.fingerprint] = {
            "tx_id": tx_id,
            "block_height": self.height,
            "timestamp": int(time.time()),
            "locator": request.locator,
            "metadata_digest": request.metadata_digest,
            "owner": request.owner_key,
            "active": True,
        }
        self.receipts[tx_id] = AnchorReceipt(tx_id=tx_id, block_height=self.height, gas_consumed=SIMULATED_GAS)
        self.transactions.append({"tx_id": tx_id, "fingerprint": request.fingerprint, "nonce": self._nonce})
        logger.info(f"📤 [memory] Anclaje {request.fingerprint} en bloque {self.height}")
        return tx_id

    async def wait_for_receipt(self, tx_id: str, confirmations: int, timeout: float) -> AnchorReceipt:
        self._ensure_reachable()
        receipt = self.receipts.get(tx_id)
        if receipt is None:
            raise LedgerTransientError("TIMEOUT", f"unknown transaction {tx_id}")
        # Cada confirmación adicional equivale a minar un bloque vacío
        self.height = max(self.height, receipt.block_height + max(confirmations, 1) - 1)
        return receipt

    async def lookup(self, fingerprint: str) -> AnchorLookup:
        self._ensure_reachable()
        doc = self.documents.get(fingerprint)
        if doc is None:
            return AnchorLookup(anchored=False)
        return AnchorLookup(
            anchored=True,
            tx_id=doc["tx_id"],
            block_height=doc["block_height"],
            anchor_timestamp=doc["timestamp"],
            locator=doc["locator"],
            active=doc["active"],
        )

    async def block_height(self) -> int:
        self._ensure_reachable()
        return self.height

    def transactions_for(self, fingerprint: str) -> List[dict]:
        return [t for t in self.transactions if t["fingerprint"] == fingerprint]
