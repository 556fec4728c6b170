import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from credvault.api.dependencies import get_container
from credvault.container import ServiceContainer
from credvault.core.exceptions import CredVaultError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """Liveness/readiness: record store, Redis, blob gateway y ledger."""
    components = {}

    try:
        await container.credentials.ping()
        components["recordStore"] = "up"
    except CredVaultError:
        components["recordStore"] = "down"

    try:
        await container.redis.ping()
        components["redis"] = "connected"
    except Exception as e:
        logger.error(f"Redis unreachable: {e}")
        components["redis"] = "unreachable"

    components["blobStore"] = container.blobs.status()

    try:
        components["ledger"] = {"reachable": True, "blockHeight": await container.ledger.block_height()}
    except CredVaultError:
        components["ledger"] = {"reachable": False, "blockHeight": None}

    healthy = components["recordStore"] == "up"
    degraded = (
        components["redis"] != "connected"
        or components["blobStore"]["status"] != "healthy"
        or not components["ledger"]["reachable"]
    )
    body = {
        "status": "ok" if healthy and not degraded else ("degraded" if healthy else "down"),
        "module": "credvault",
        "version": "0.1.0",
        "components": components,
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )
