from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class ProviderHealth:
    """Estado de salud de un proveedor. Lo escribe el health-check, se lee sin lock."""
    name: str
    available: bool = True
    last_latency: Optional[float] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "available": self.available, "lastLatency": self.last_latency}


class IBlobProvider(ABC):
    """Interfaz de un proveedor direccionado por contenido: bytes idénticos => mismo localizador."""

    name: str = "blob"

    @abstractmethod
    async def upload(self, data: bytes) -> str:
        """Sube el blob cifrado y retorna su localizador inmutable."""
        pass

    @abstractmethod
    async def fetch(self, locator: str) -> bytes:
        """Descarga el blob identificado por `locator`."""
        pass

    @abstractmethod
    async def probe(self) -> bool:
        """Chequeo de disponibilidad barato."""
        pass

    def accepts(self, locator: str) -> bool:
        """Indica si el localizador puede haber sido emitido por este proveedor."""
        return True

    async def close(self) -> None:
        pass
