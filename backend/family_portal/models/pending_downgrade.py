from sqlalchemy import Column, Integer, DateTime, Enum as SAEnum, JSON, ForeignKey, func
from family_portal.core.database import Base

PENDING_CHANGE_STATUSES = ("pending", "applied", "canceled")


class PendingDowngrade(Base):
    __tablename__ = "pending_downgrades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    membership_id = Column(Integer, ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False, index=True)
    new_children_count = Column(Integer, nullable=False)
    children_to_keep = Column(JSON, nullable=False, comment="Child ids that keep their access codes")
    scheduled_for = Column(DateTime, nullable=False, comment="Period end at the time of the request")
    status = Column(
        SAEnum(*PENDING_CHANGE_STATUSES, name="pending_downgrade_status"),
        nullable=False,
        default="pending",
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
