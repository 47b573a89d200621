"""One-click unsubscribe link target.

An unknown or expired token is an expected case: the route answers with
a JSON failure body, never an error page.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from parcelnotify.api.deps import get_subscription_registry
from parcelnotify.subscriptions.registry import SubscriptionRegistry

router = APIRouter(tags=["subscriptions"])


@router.get("/unsubscribe/{token}", summary="Unsubscribe via emailed/SMS link")
def unsubscribe(token: str, registry: SubscriptionRegistry = Depends(get_subscription_registry)):
    if registry.unsubscribe_by_token(token):
        return {"success": True, "message": "You have been unsubscribed from notifications"}
    return JSONResponse(
        status_code=404,
        content={"success": False, "message": "Invalid or expired unsubscribe link"},
    )
