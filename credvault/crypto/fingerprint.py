import hashlib
import json
from typing import Any, Dict


def fingerprint(data: bytes) -> str:
    """
    Huella canónica de contenido: SHA-256 sobre los bytes exactos del archivo,
    en hexadecimal minúsculas con prefijo `0x` (66 caracteres).
    """
    return "0x" + hashlib.sha256(data).hexdigest()


def metadata_digest(metadata: Dict[str, Any]) -> str:
    """
    Digest del JSON canónico de metadatos (claves ordenadas, sin espacios).
    Es lo que se ancla en el ledger junto a la huella y el localizador.
    """
    canonical = json.dumps(metadata, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
