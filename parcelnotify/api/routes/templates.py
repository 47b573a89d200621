from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from parcelnotify.api.deps import get_template_manager
from parcelnotify.core.constants import VALID_CHANNELS
from parcelnotify.notification.errors import TemplateNotFoundError
from parcelnotify.notification.template_manager import TemplateManager

router = APIRouter(prefix="/templates", tags=["templates"])


@router.get("/preview", summary="Render a template with sample data")
def preview_template(
    channel: str = Query(...),
    event_code: str = Query(...),
    locale: str | None = Query(None),
    templates: TemplateManager = Depends(get_template_manager),
):
    if channel not in VALID_CHANNELS:
        raise HTTPException(status_code=400, detail=f"Invalid channel: {channel!r}")
    try:
        message = templates.preview(channel, event_code, locale)
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {
        "channel": message.channel,
        "event_code": message.event_code,
        "locale": message.locale,
        "subject": message.subject,
        "body": message.body,
        "payload": message.payload,
    }
