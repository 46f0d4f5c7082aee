"""Children of a family and their access codes"""
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from family_portal.core.errors import MembershipNotFound, SeatLimitExceeded
from family_portal.core.logging import get_logger
from family_portal.models.child import Child
from family_portal.models.family_code import FamilyCode
from family_portal.models.membership import ACTIVE_STATUSES, Membership
from family_portal.models.plan import Plan
from family_portal.models.profile import Profile
from family_portal.services.mail_service import send_family_codes_email
from family_portal.services.notification_service import NotificationService, children_label
from family_portal.services.provisioning_service import draw_new_codes

logger = get_logger(__name__)


@dataclass
class NewChild:
    first_name: str
    last_name: str
    birth_date: Optional[date] = None
    city: Optional[str] = None
    country: Optional[str] = None


def get_active_membership(db: Session, family_id: Optional[int]) -> Optional[Membership]:
    if not family_id:
        return None
    return db.query(Membership).filter(
        Membership.family_id == family_id,
        Membership.status.in_(ACTIVE_STATUSES),
    ).order_by(Membership.id.desc()).first()


def list_children(db: Session, family_id: int) -> list[dict]:
    rows = db.query(Child, FamilyCode).outerjoin(
        FamilyCode, Child.family_code_id == FamilyCode.id,
    ).filter(Child.family_id == family_id).order_by(Child.id.asc()).all()
    return [
        {
            "id": child.id,
            "first_name": child.first_name,
            "last_name": child.last_name,
            "birth_date": child.birth_date,
            "city": child.city,
            "country": child.country,
            "code": code.code if code else None,
            "code_status": code.status if code else None,
            "created_at": child.created_at,
        }
        for child, code in rows
    ]


def count_active_child_codes(db: Session, family_id: int) -> int:
    return db.query(FamilyCode).filter(
        FamilyCode.family_id == family_id,
        FamilyCode.code_type == "child",
        FamilyCode.status == "active",
    ).count()


def get_parent_code(db: Session, family_id: int) -> Optional[str]:
    row = db.query(FamilyCode).filter(
        FamilyCode.family_id == family_id,
        FamilyCode.code_type == "parent",
        FamilyCode.status == "active",
    ).first()
    return row.code if row else None


def register_children(
    db: Session,
    notifier: NotificationService,
    profile: Profile,
    children: list[NewChild],
) -> list[dict]:
    """Create children with fresh child codes, within the plan's seats"""
    membership = get_active_membership(db, profile.family_id)
    if membership is None:
        raise MembershipNotFound()

    plan = db.query(Plan).filter(Plan.id == membership.plan_id).first()
    max_children = plan.max_children if plan else 1
    in_use = count_active_child_codes(db, profile.family_id)
    if in_use + len(children) > max_children:
        raise SeatLimitExceeded(
            f"Tu plan permite {children_label(max_children)}; ya tienes {in_use} registrados"
        )

    codes = draw_new_codes(db, "child", len(children))
    created = []
    for new_child, code in zip(children, codes):
        family_code = FamilyCode(code=code, code_type="child", family_id=profile.family_id, status="active")
        db.add(family_code)
        db.flush()
        child = Child(
            family_id=profile.family_id,
            first_name=new_child.first_name,
            last_name=new_child.last_name,
            birth_date=new_child.birth_date,
            city=new_child.city,
            country=new_child.country,
            family_code_id=family_code.id,
        )
        db.add(child)
        created.append((child, code))
    db.commit()

    logger.info(f"Children registered: family_id={profile.family_id}, count={len(created)}")

    parent_code = get_parent_code(db, profile.family_id)
    if profile.email and parent_code:
        send_family_codes_email(
            profile.email,
            profile.first_name,
            parent_code,
            [{"name": child.first_name, "code": code} for child, code in created],
        )

    for child, _ in created:
        notifier.notify(
            profile.id,
            "child_registered",
            f"{child.first_name} registrado exitosamente",
            f"{child.first_name} ya puede ingresar con su código de acceso.",
        )

    return [{"id": child.id, "first_name": child.first_name, "code": code} for child, code in created]
