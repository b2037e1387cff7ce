from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional

from ...api.deps import get_workspace
from ...core.config import settings
from ...schemas.notification import NotificationFeed, NotificationFilter
from ...services.encounter_service import Workspace

router = APIRouter(prefix="/notifications", tags=["Notifications"])

@router.get("/feed", response_model=NotificationFeed)
async def notification_feed(
    unread_only: bool = False,
    category: Optional[str] = None,
    role: Optional[str] = Query(None, description="Viewer role, e.g. doctor"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=settings.NOTIFICATION_FETCH_LIMIT),
    workspace: Workspace = Depends(get_workspace),
):
    """Server notifications and clinical alerts grouped by recency."""
    await workspace.notifications.refresh(
        NotificationFilter(unread_only=unread_only, category=category, page=page, limit=limit),
        role=role,
    )
    return workspace.notifications.build_feed()

@router.patch("/{notification_id}/read")
async def mark_read(notification_id: str, workspace: Workspace = Depends(get_workspace)):
    updated = await workspace.notifications.mark_read(notification_id)
    return {"id": notification_id, "updated": updated}

@router.post("/read-all")
async def mark_all_read(workspace: Workspace = Depends(get_workspace)):
    updated = await workspace.notifications.mark_all_read()
    return {"updated": updated}

@router.post("/{notification_id}/archive")
async def archive(notification_id: str, workspace: Workspace = Depends(get_workspace)):
    if not await workspace.notifications.archive(notification_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Clinical alerts cannot be archived",
        )
    return {"id": notification_id, "archived": True}
