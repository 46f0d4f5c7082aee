import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEBUG"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RESEND_API_KEY"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from family_portal.core.database import Base
from family_portal.core.errors import ProcessorError
from family_portal.models import Child, Family, FamilyCode, Membership, Profile
from family_portal.services.notification_service import NotificationService
from family_portal.services.plan_service import get_or_create_plan
from family_portal.services.stripe_service import PriceCatalog, StripeGateway, to_timestamp

PERIOD_END = datetime(2026, 11, 1, 0, 0, 0)
WEBHOOK_SECRET = "whsec_test_secret"

CATALOG = PriceCatalog(
    base_monthly="price_base_monthly",
    base_yearly="price_base_yearly",
    additional_monthly="price_child_monthly",
    additional_yearly="price_child_yearly",
)


def make_subscription(
    subscription_id: str = "sub_1",
    children: int = 2,
    billing_cycle: str = "monthly",
    period_end: datetime = PERIOD_END,
    status: str = "active",
    cancel_at_period_end: bool = False,
    metadata: dict | None = None,
    customer: str = "cus_1",
) -> dict:
    """Subscription payload shaped like Stripe's (plain dicts)"""
    interval = "month" if billing_cycle == "monthly" else "year"
    items = [{
        "id": "si_base",
        "price": {"id": CATALOG.base_price(billing_cycle), "recurring": {"interval": interval}},
        "quantity": 1,
    }]
    if children > 1:
        items.append({
            "id": "si_child",
            "price": {"id": CATALOG.additional_price(billing_cycle), "recurring": {"interval": interval}},
            "quantity": children - 1,
        })
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": to_timestamp(period_end),
        "metadata": metadata if metadata is not None else {"childrenCount": str(children)},
        "items": {"data": items},
    }


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


class FakeStripeGateway(StripeGateway):
    """In-memory Stripe; webhook signature verification stays real"""

    def __init__(self, catalog: PriceCatalog = CATALOG):
        super().__init__(api_key="sk_test_dummy", catalog=catalog, webhook_secret=WEBHOOK_SECRET)
        self.subscriptions: dict[str, dict] = {}
        self.checkout_sessions: dict[str, dict] = {}
        self.schedules: list[dict] = []
        self.calls: list[tuple] = []
        self.failing: set[str] = set()
        self.preview_lines = [
            {"amount": 2000, "proration": True},
            {"amount": -334, "proration": True},
            {"amount": 3700, "proration": False},
        ]

    def _record(self, name: str, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.failing:
            raise ProcessorError(f"Stripe {name} failed")

    def calls_to(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        return self.subscriptions[subscription_id]

    def update_subscription(self, subscription_id, items=None, proration_behavior=None, metadata=None):
        self._record(
            "update_subscription", subscription_id,
            items=items, proration_behavior=proration_behavior, metadata=metadata,
        )
        subscription = self.subscriptions[subscription_id]
        if items:
            self._apply_items(subscription, items)
        if metadata is not None:
            subscription["metadata"] = dict(metadata)
        return subscription

    def _apply_items(self, subscription, changes):
        """Same item semantics as Stripe: update by id, delete, or add by price"""
        data = subscription["items"]["data"]
        for change in changes:
            item = next((i for i in data if change.get("id") and i["id"] == change["id"]), None)
            if change.get("deleted"):
                data.remove(item)
                continue
            if item is None:
                item = {"id": f"si_{len(self.calls)}", "price": {"id": change["price"]}, "quantity": 1}
                data.append(item)
            if "price" in change:
                item["price"] = {"id": change["price"]}
            if "quantity" in change:
                item["quantity"] = change["quantity"]

    def preview_invoice(self, customer_id, subscription_id, items):
        self._record("preview_invoice", customer_id, subscription_id, items=items)
        return {"lines": {"data": self.preview_lines}}

    def list_subscription_schedules(self, customer_id):
        self._record("list_subscription_schedules", customer_id)
        return [s for s in self.schedules if s.get("customer") == customer_id]

    def create_schedule_from_subscription(self, subscription_id):
        self._record("create_schedule_from_subscription", subscription_id)
        schedule = {
            "id": f"sub_sched_{len(self.schedules) + 1}",
            "customer": self.subscriptions[subscription_id]["customer"],
            "status": "active",
            "phases": [{"start_date": to_timestamp(PERIOD_END - timedelta(days=30))}],
        }
        self.schedules.append(schedule)
        return schedule

    def update_schedule(self, schedule_id, phases, end_behavior="release"):
        self._record("update_schedule", schedule_id, phases=phases, end_behavior=end_behavior)
        return {"id": schedule_id, "phases": phases, "end_behavior": end_behavior}

    def release_schedule(self, schedule_id):
        self._record("release_schedule", schedule_id)
        for schedule in self.schedules:
            if schedule["id"] == schedule_id:
                schedule["status"] = "released"
        return {"id": schedule_id, "status": "released"}

    def create_checkout_session(self, line_items, success_url, cancel_url, customer_email=None, metadata=None):
        self._record(
            "create_checkout_session",
            line_items=line_items, success_url=success_url, cancel_url=cancel_url,
            customer_email=customer_email, metadata=metadata,
        )
        return "https://checkout.stripe.test/session"

    def retrieve_checkout_session(self, session_id):
        self._record("retrieve_checkout_session", session_id)
        return self.checkout_sessions[session_id]

    def create_billing_portal_session(self, customer_id, return_url):
        self._record("create_billing_portal_session", customer_id, return_url)
        return "https://billing.stripe.test/portal"


# =========================================================
# Database
# =========================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite: let SQLAlchemy emit BEGIN so SAVEPOINTs behave
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def notifier(db):
    return NotificationService(db)


# =========================================================
# Factories
# =========================================================

@pytest.fixture
def make_profile(db):
    counter = {"n": 0}

    def _make(family_id=None, role="parent", last_name="Pérez"):
        counter["n"] += 1
        profile = Profile(
            email=f"user{counter['n']}@example.com",
            first_name=f"Usuario{counter['n']}",
            last_name=last_name,
            role=role,
            family_id=family_id,
            is_active=True,
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def make_family(db, gateway, make_profile):
    """Family with a parent, `children` registered children (active codes),
    a Membership and the matching Stripe subscription in the fake gateway."""
    counter = {"n": 0}

    def _make(children=2, billing_cycle="monthly", period_end=PERIOD_END, status="active"):
        counter["n"] += 1
        n = counter["n"]
        family = Family(name=f"Familia {n}")
        db.add(family)
        db.flush()
        parent = make_profile(family_id=family.id)

        plan = get_or_create_plan(db, children)
        membership = Membership(
            family_id=family.id,
            plan_id=plan.id,
            status=status,
            billing_cycle=billing_cycle,
            stripe_subscription_id=f"sub_{n}",
            stripe_customer_id=f"cus_{n}",
            current_period_end=period_end,
            cancel_at_period_end=False,
        )
        db.add(membership)
        db.add(FamilyCode(
            code=f"P-{n:08d}", code_type="parent", family_id=family.id, profile_id=parent.id, status="active",
        ))

        kids = []
        for i in range(children):
            code = FamilyCode(code=f"E-{n:04d}{i:04d}", code_type="child", family_id=family.id, status="active")
            db.add(code)
            db.flush()
            child = Child(family_id=family.id, first_name=f"Hijo{i + 1}", last_name="Pérez", family_code_id=code.id)
            db.add(child)
            kids.append(child)
        db.commit()

        gateway.subscriptions[membership.stripe_subscription_id] = make_subscription(
            subscription_id=membership.stripe_subscription_id,
            children=children,
            billing_cycle=billing_cycle,
            period_end=period_end,
            customer=membership.stripe_customer_id,
        )
        return {"family": family, "parent": parent, "membership": membership, "children": kids}

    return _make
