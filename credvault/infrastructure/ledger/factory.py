from credvault.config import Settings
from credvault.infrastructure.ledger.gateway import LedgerGateway
from credvault.infrastructure.ledger.interface import ILedgerClient
from credvault.infrastructure.ledger.memory_client import InMemoryLedgerClient


def build_ledger_client(settings: Settings) -> ILedgerClient:
    if settings.LEDGER_RPC_URL.startswith("memory://"):
        return InMemoryLedgerClient()

    # Import diferido: web3 arrastra dependencias pesadas
    from credvault.infrastructure.ledger.web3_client import Web3LedgerClient

    return Web3LedgerClient(
        rpc_url=settings.LEDGER_RPC_URL,
        chain_id=settings.LEDGER_CHAIN_ID,
        signer_secret=settings.LEDGER_SIGNER_SECRET,
        contract_address=settings.LEDGER_CONTRACT_ADDRESS,
    )


def build_ledger_gateway(settings: Settings, client: ILedgerClient = None) -> LedgerGateway:
    return LedgerGateway(
        client or build_ledger_client(settings),
        confirmations=settings.LEDGER_CONFIRMATIONS,
        receipt_timeout=settings.LEDGER_RECEIPT_TIMEOUT_SECONDS,
        retry_base=settings.LEDGER_RETRY_BASE_SECONDS,
        retry_cap=settings.LEDGER_RETRY_CAP_SECONDS,
    )
