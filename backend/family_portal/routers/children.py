from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from family_portal.core.database import get_db
from family_portal.models.profile import Profile
from family_portal.routers.deps import get_notifier, require_login, require_parent
from family_portal.schemas.children import ChildInfo, RegisterChildrenRequest, RegisteredChild
from family_portal.services.family_service import NewChild, list_children, register_children
from family_portal.services.notification_service import NotificationService

router = APIRouter(prefix="/api/children", tags=["children"])


@router.get("", response_model=list[ChildInfo])
async def get_children(
    user: Profile = Depends(require_login),
    db: Session = Depends(get_db),
):
    if not user.family_id:
        return []
    return list_children(db, user.family_id)


@router.post("", response_model=list[RegisteredChild], status_code=201)
async def add_children(
    req: RegisterChildrenRequest,
    user: Profile = Depends(require_parent),
    db: Session = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
):
    """Register children and issue their access codes"""
    if not user.family_id:
        raise HTTPException(status_code=404, detail="No se encontró la familia")
    children = [NewChild(**child.model_dump()) for child in req.children]
    return register_children(db, notifier, user, children)
