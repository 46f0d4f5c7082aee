from sqlalchemy import Column, Integer, DateTime, Enum as SAEnum, ForeignKey, func
from family_portal.core.database import Base
from family_portal.models.pending_downgrade import PENDING_CHANGE_STATUSES


class PendingBillingChange(Base):
    __tablename__ = "pending_billing_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    membership_id = Column(Integer, ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False, index=True)
    new_billing_cycle = Column(SAEnum("monthly", "yearly", name="pending_billing_cycle"), nullable=False)
    new_children_count = Column(Integer, nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    status = Column(
        SAEnum(*PENDING_CHANGE_STATUSES, name="pending_billing_change_status"),
        nullable=False,
        default="pending",
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
