from fastapi import APIRouter, Depends

from parcelnotify.api.deps import get_channels, get_dispatch_queue
from parcelnotify.core.settings import get_settings
from parcelnotify.dispatch.queue import DispatchQueue
from parcelnotify.notification.channels import Channel

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Service and dispatch health")
def health_check(
    channels: dict[str, Channel] = Depends(get_channels),
    queue: DispatchQueue = Depends(get_dispatch_queue),
) -> dict:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
        "channels": sorted(channels),
        "dispatch": {
            "worker_enabled": settings.dispatch_worker_enabled,
            "queued_tasks": len(queue),
        },
    }
