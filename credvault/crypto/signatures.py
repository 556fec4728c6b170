from eth_account import Account
from eth_account.messages import encode_defunct

from credvault.core.exceptions import CryptoError


def recover_signer(message: str, signature: str) -> str:
    """
    Recupera la dirección firmante usando el sobre estándar de Ethereum
    para mensajes personales ("\\x19Ethereum Signed Message:\\n" + len).
    """
    try:
        signable = encode_defunct(text=message)
        return Account.recover_message(signable, signature=signature).lower()
    except Exception as e:
        raise CryptoError("Signature could not be decoded") from e


def verify_signature(wallet_key: str, message: str, signature: str) -> bool:
    """Compara el firmante recuperado contra la wallet esperada (minúsculas)."""
    return recover_signer(message, signature) == wallet_key.lower()
