from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from family_portal.core.database import get_db
from family_portal.models.profile import Profile
from family_portal.routers.deps import require_login
from family_portal.schemas.notification import NotificationInfo, UnreadCount
from family_portal.services import notification_service

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@router.get("", response_model=list[NotificationInfo])
async def list_notifications(
    limit: int = 50,
    user: Profile = Depends(require_login),
    db: Session = Depends(get_db),
):
    return notification_service.list_notifications(db, user.id, limit=min(max(limit, 1), 100))


@router.get("/count", response_model=UnreadCount)
async def unread_count(
    user: Profile = Depends(require_login),
    db: Session = Depends(get_db),
):
    return {"count": notification_service.count_unread(db, user.id)}


@router.put("/read-all")
async def read_all(
    user: Profile = Depends(require_login),
    db: Session = Depends(get_db),
):
    updated = notification_service.mark_all_read(db, user.id, _utcnow())
    return {"success": True, "updated": updated}


@router.put("/{notification_id}/read")
async def read_one(
    notification_id: int,
    user: Profile = Depends(require_login),
    db: Session = Depends(get_db),
):
    if not notification_service.mark_read(db, user.id, notification_id, _utcnow()):
        raise HTTPException(status_code=404, detail="Notificación no encontrada")
    return {"success": True}
