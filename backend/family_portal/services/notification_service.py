"""User notifications

Notifications are a side effect of state transitions. Callers commit the
transition first; a failing insert here is logged and dropped so it can
never undo (or cause a webhook retry of) the transition itself.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from family_portal.models.notification import Notification
from family_portal.models.profile import Profile
from family_portal.core.logging import get_logger

logger = get_logger(__name__)

_MONTHS_ES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def format_long_date(dt: Optional[datetime], with_year: bool = True) -> str:
    """17 de octubre de 2026"""
    if dt is None:
        return "el final del período"
    text = f"{dt.day} de {_MONTHS_ES[dt.month - 1]}"
    return f"{text} de {dt.year}" if with_year else text


def children_label(count: int) -> str:
    return f"{count} {'hijo' if count == 1 else 'hijos'}"


def cycle_label(billing_cycle: str) -> str:
    return "mensual" if billing_cycle == "monthly" else "anual"


def get_parent_profile(db: Session, family_id: int) -> Optional[Profile]:
    return db.query(Profile).filter(
        Profile.family_id == family_id,
        Profile.role == "parent",
    ).order_by(Profile.id.asc()).first()


class NotificationService:
    def __init__(self, db: Session):
        self.db = db

    def notify(self, profile_id: Optional[int], type_: str, title: str, message: str) -> Optional[Notification]:
        if not profile_id:
            logger.warning(f"Notification skipped, no recipient: type={type_}")
            return None
        try:
            notification = Notification(profile_id=profile_id, type=type_, title=title, message=message)
            self.db.add(notification)
            self.db.commit()
            return notification
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Notification insert failed: profile_id={profile_id}, type={type_} - {e}")
            return None

    def notify_family(self, family_id: int, type_: str, title: str, message: str) -> Optional[Notification]:
        """Send to the family's parent profile"""
        parent = get_parent_profile(self.db, family_id)
        if parent is None:
            logger.warning(f"Notification skipped, no parent profile: family_id={family_id}, type={type_}")
            return None
        return self.notify(parent.id, type_, title, message)


# =========================================================
# Inbox
# =========================================================

def list_notifications(db: Session, profile_id: int, limit: int = 50) -> list[Notification]:
    return db.query(Notification).filter(
        Notification.profile_id == profile_id,
    ).order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def count_unread(db: Session, profile_id: int) -> int:
    return db.query(Notification).filter(
        Notification.profile_id == profile_id,
        Notification.read_at.is_(None),
    ).count()


def mark_read(db: Session, profile_id: int, notification_id: int, now: datetime) -> bool:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.profile_id == profile_id,
    ).first()
    if not notification:
        return False
    if notification.read_at is None:
        notification.read_at = now
        db.commit()
    return True


def mark_all_read(db: Session, profile_id: int, now: datetime) -> int:
    updated = db.query(Notification).filter(
        Notification.profile_id == profile_id,
        Notification.read_at.is_(None),
    ).update({Notification.read_at: now}, synchronize_session=False)
    db.commit()
    return updated
