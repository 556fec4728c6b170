import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credvault.core.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Sesión + transacción. Commit al salir, rollback ante cualquier excepción.
    Los fallos de conectividad del backend se traducen a STORE_UNAVAILABLE.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except (OperationalError, InterfaceError, OSError) as e:
        logger.error(f"❌ Record store no disponible: {type(e).__name__}")
        raise StoreUnavailable() from e
