import asyncio
import json
import logging

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from credvault.core.exceptions import LedgerRejected, LedgerTransientError
from credvault.infrastructure.ledger.abi import DOCUMENT_REGISTRY_ABI
from credvault.infrastructure.ledger.interface import (
    AnchorLookup,
    AnchorReceipt,
    ILedgerClient,
    RegistrationRequest,
)

logger = logging.getLogger(__name__)

ZERO_HASH = b"\x00" * 32

# Fragmentos de mensajes de nodos EVM (geth, hardhat, anvil)
_NONCE_MARKERS = ("nonce too low", "replacement transaction underpriced", "already known", "nonce has already been used")
_TERMINAL_MARKERS = ("insufficient funds", "user rejected", "user denied", "execution reverted", "invalid sender")


def classify_error(exc: Exception) -> Exception:
    """Mapea una excepción del nodo a transitoria (reintentable) o terminal."""
    if isinstance(exc, (LedgerRejected, LedgerTransientError)):
        return exc
    if isinstance(exc, ContractLogicError):
        return LedgerRejected(f"Contract reverted: {exc}")
    message = str(exc).lower()
    if any(m in message for m in _NONCE_MARKERS):
        return LedgerTransientError("NONCE_EXPIRED", str(exc))
    if any(m in message for m in _TERMINAL_MARKERS):
        return LedgerRejected(f"Ledger rejected transaction: {exc}")
    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted)):
        return LedgerTransientError("TIMEOUT", str(exc))
    return LedgerTransientError("NETWORK_ERROR", f"{type(exc).__name__}: {exc}")


class Web3LedgerClient(ILedgerClient):
    """Cliente EVM (JSON-RPC) del contrato DocumentRegistry."""

    def __init__(self, rpc_url: str, chain_id: int, signer_secret: str, contract_address: str):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self._account = Account.from_key(signer_secret)
        self.signer_address = self._account.address.lower()
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=DOCUMENT_REGISTRY_ABI,
        )

    async def submit_registration(self, request: RegistrationRequest) -> str:
        document_hash = bytes.fromhex(request.fingerprint[2:])
        metadata = json.dumps(
            {"metadataDigest": request.metadata_digest, "credentialKind": request.credential_kind},
            sort_keys=True,
        )
        try:
            # 1. Nonce "pending" para no colisionar con transacciones en vuelo
            nonce = await self.w3.eth.get_transaction_count(self._account.address, "pending")

            # 2. build_transaction estima gas: un revert aparece aquí
            tx = await self.contract.functions.registerDocument(
                document_hash,
                request.locator,
                AsyncWeb3.to_checksum_address(request.owner_key),
                metadata,
            ).build_transaction({
                "from": self._account.address,
                "nonce": nonce,
                "chainId": self.chain_id,
            })

            # 3. Firma local + envío
            signed = self._account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e) from e

        tx_id = "0x" + bytes(tx_hash).hex().removeprefix("0x")
        logger.info(f"📤 Transacción de anclaje enviada: {tx_id} (nonce {nonce})")
        return tx_id

    async def wait_for_receipt(self, tx_id: str, confirmations: int, timeout: float) -> AnchorReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_id, timeout=timeout)
            if receipt["status"] != 1:
                raise LedgerRejected(f"Transaction {tx_id} reverted")

            # Esperar N confirmaciones sobre el bloque de inclusión
            target = receipt["blockNumber"] + max(confirmations, 1) - 1
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while await self.w3.eth.block_number < target:
                if loop.time() > deadline:
                    raise LedgerTransientError("TIMEOUT", f"{tx_id} lacks {confirmations} confirmations")
                await asyncio.sleep(1)
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e) from e

        return AnchorReceipt(
            tx_id=tx_id,
            block_height=receipt["blockNumber"],
            gas_consumed=receipt["gasUsed"],
        )

    async def lookup(self, fingerprint: str) -> AnchorLookup:
        document_hash = bytes.fromhex(fingerprint[2:])
        try:
            document = await self.contract.functions.getDocument(document_hash).call()
        except ContractLogicError:
            # El contrato revierte para huellas desconocidas
            return AnchorLookup(anchored=False)
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e) from e

        stored_hash, ipfs_hash, _issuer, _owner, timestamp, is_active, _metadata = document
        if bytes(stored_hash) == ZERO_HASH or timestamp == 0:
            return AnchorLookup(anchored=False)

        try:
            logs = await self.contract.events.DocumentRegistered.get_logs(
                argument_filters={"documentHash": document_hash},
                from_block=0,
            )
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e) from e

        tx_id, block_height = None, None
        if logs:
            first = logs[0]
            tx_id = "0x" + bytes(first["transactionHash"]).hex().removeprefix("0x")
            block_height = first["blockNumber"]

        return AnchorLookup(
            anchored=True,
            tx_id=tx_id,
            block_height=block_height,
            anchor_timestamp=int(timestamp),
            locator=ipfs_hash,
            active=bool(is_active),
        )

    async def block_height(self) -> int:
        try:
            return await self.w3.eth.block_number
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e) from e
