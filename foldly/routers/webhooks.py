import json

from fastapi import APIRouter, Depends, Request
from svix.webhooks import Webhook, WebhookVerificationError

from foldly.config import config
from foldly.dependencies import get_user_service
from foldly.exceptions import FoldlyError
from foldly.logger import get_logger
from foldly.services.user_service import UserService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/clerk-user-events")
async def clerk_user_events(request: Request, users: UserService = Depends(get_user_service)):
    """Identity-provider user lifecycle events.

    Always answers 200: the provider retries anything else, and a failure
    here is ours to fix, not a reason to receive the same event again.
    """
    payload = await request.body()
    headers = {
        "svix-id": request.headers.get("svix-id", ""),
        "svix-timestamp": request.headers.get("svix-timestamp", ""),
        "svix-signature": request.headers.get("svix-signature", ""),
    }

    try:
        Webhook(config.CLERK_WEBHOOK_SECRET).verify(payload, headers)
    except WebhookVerificationError:
        logger.warning("Rejected webhook %s: bad signature", headers["svix-id"] or "<no id>")
        return {"success": False, "error": "Invalid signature"}

    # verify() only checks the signature; its return value differs between svix releases.
    event_type = None
    try:
        event = json.loads(payload)
        event_type = event.get("type")
        data = event.get("data") or {}

        if event_type in ("user.created", "user.updated"):
            user = await users.sync_user(data)
            logger.info("Handled %s for %s", event_type, user.id)
        elif event_type == "user.deleted":
            if data.get("id"):
                await users.delete_user(data["id"])
        else:
            logger.info("Ignoring webhook event %s", event_type)
    except FoldlyError as e:
        logger.error("Webhook %s failed: %s", event_type, e.message, exc_info=True)
        return {"success": False, "error": e.message}
    except Exception:
        logger.exception("Webhook %s failed unexpectedly", event_type)
        return {"success": False, "error": "Internal error"}

    return {"success": True}
