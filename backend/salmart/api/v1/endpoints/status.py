"""
Status and health check endpoints.

WHAT: Liveness of the message store plus room hub occupancy
WHY: A dead store means sends fail; an empty hub means no live delivery
HOW: Ping the SQLite engine and count rooms and subscriptions in the hub
"""

from fastapi import APIRouter, Depends

from ....core.config import settings
from ....core.database import ping_database
from ....services.chat_service import ChatService
from ....utils.logger import get_logger
from ...deps import get_chat_service

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(service: ChatService = Depends(get_chat_service)):
    """
    Report `healthy` when the store answers, `degraded` otherwise.

    The hub is in-memory and cannot fail on its own, so it only
    contributes counts.
    """
    db_status = ping_database()
    if not db_status["available"]:
        logger.error(f"Health check: message store unavailable ({db_status['error']})")

    rooms = service.hub.rooms
    return {
        "status": "healthy" if db_status["available"] else "degraded",
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": {
            "database": {
                "available": db_status["available"],
                "journal_mode": db_status.get("journal_mode")
            },
            "rooms": {
                "active": len(rooms),
                "subscriptions": sum(len(members) for members in rooms.values())
            }
        }
    }
