# Import every model (Alembic autogenerate, metadata.create_all)
from family_portal.models.family import Family
from family_portal.models.profile import Profile
from family_portal.models.plan import Plan
from family_portal.models.membership import Membership
from family_portal.models.family_code import FamilyCode
from family_portal.models.child import Child
from family_portal.models.pending_downgrade import PendingDowngrade
from family_portal.models.pending_billing_change import PendingBillingChange
from family_portal.models.notification import Notification
from family_portal.models.processed_stripe_event import ProcessedStripeEvent

__all__ = [
    "Family",
    "Profile",
    "Plan",
    "Membership",
    "FamilyCode",
    "Child",
    "PendingDowngrade",
    "PendingBillingChange",
    "Notification",
    "ProcessedStripeEvent",
]
