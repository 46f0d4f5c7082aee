"""Shared dependencies: authentication, membership, engines"""
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from family_portal.core.database import get_db
from family_portal.core.errors import MembershipNotFound
from family_portal.core.redis import get_redis
from family_portal.core.session import get_session
from family_portal.models.membership import Membership
from family_portal.models.profile import Profile
from family_portal.services.family_service import get_active_membership
from family_portal.services.notification_service import NotificationService


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    r=Depends(get_redis),
) -> Optional[Profile]:
    """Cookie -> Redis -> DB. None when not logged in"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return None

    session_data = await get_session(r, session_id)
    if not session_data:
        return None

    user_id = int(session_data.get("user_id", 0))
    if not user_id:
        return None

    return db.query(Profile).filter(Profile.id == user_id, Profile.is_active == True).first()


async def require_login(
    user: Optional[Profile] = Depends(get_current_user),
) -> Profile:
    """401 unless logged in"""
    if user is None:
        raise HTTPException(status_code=401, detail="Debes iniciar sesión")
    return user


async def require_parent(
    user: Profile = Depends(require_login),
) -> Profile:
    """Billing and family management are parent-only"""
    if user.role != "parent":
        raise HTTPException(status_code=403, detail="Solo el padre o tutor puede realizar esta acción")
    return user


async def require_membership(
    user: Profile = Depends(require_parent),
    db: Session = Depends(get_db),
) -> Membership:
    membership = get_active_membership(db, user.family_id)
    if membership is None or not membership.stripe_subscription_id:
        raise MembershipNotFound()
    return membership


def get_notifier(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db)
