"""Shared test infrastructure for the Fixera booking test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- settings: Settings without .env, no capture backoff
- fake_gateway: in-memory PaymentGateway recording every call
- notifier: Notifier recording every notification
- make_user / make_project / make_booking: row factories
- booking_service: BookingService wired to the fakes above
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from fixera_platform.infra.database import Base

import fixera_platform.domain.models  # noqa: F401

from fixera_platform.app.config import Settings
from fixera_platform.domain.errors import PaymentFailureError
from fixera_platform.domain.models import Booking, Project, User
from fixera_platform.infra.payment_gateway import GatewayAuthorization
from fixera_platform.services.booking_service import BookingService

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def all_week():
    """Weekly pattern open 09:00-17:00 every day, so tests do not depend on the weekday."""
    return {day: {"available": True, "start_time": "09:00", "end_time": "17:00"} for day in WEEKDAYS}


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        payment_capture_backoff_seconds=0,
        platform_commission_percent=10.0,
        default_vat_rate=0.0,
        payment_webhook_secret="",
        sendgrid_api_key="",
    )


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakePaymentGateway:
    """In-memory gateway. Queue failures with ``fail_next``."""

    def __init__(self):
        self.authorizations: list[dict] = []
        self.captures: list[str] = []
        self.refunds: list[dict] = []
        self._failures: dict[str, list[PaymentFailureError]] = {}

    def fail_next(self, operation: str, retryable: bool = False, times: int = 1):
        self._failures.setdefault(operation, []).extend(
            PaymentFailureError(operation, "simulated failure", retryable=retryable) for _ in range(times)
        )

    def _maybe_fail(self, operation: str):
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    async def authorize(self, amount, currency, idempotency_key, metadata=None):
        self._maybe_fail("authorize")
        gateway_id = f"pi_{uuid.uuid4().hex[:12]}"
        self.authorizations.append(
            {"id": gateway_id, "amount": amount, "currency": currency, "key": idempotency_key}
        )
        return GatewayAuthorization(gateway_payment_id=gateway_id, client_secret=f"{gateway_id}_secret")

    async def capture(self, gateway_payment_id, idempotency_key):
        self._maybe_fail("capture")
        self.captures.append(gateway_payment_id)

    async def refund(self, gateway_payment_id, idempotency_key, amount=None, captured=True, currency="EUR"):
        self._maybe_fail("refund")
        self.refunds.append(
            {"id": gateway_payment_id, "amount": amount, "captured": captured, "key": idempotency_key}
        )


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple] = []
        self.fail = fail

    async def send(self, event, recipient, payload):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append((event, recipient.user_id, payload))
        return True

    def events(self) -> list[str]:
        return [event.value for event, _, _ in self.sent]


@pytest.fixture
def fake_gateway():
    return FakePaymentGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def booking_service(db_session, fake_gateway, notifier, settings):
    return BookingService(db_session, fake_gateway, notifier, settings)


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        pro = await make_user(role="professional", timezone="Europe/Brussels")
    """
    async def _factory(
        role: str = "customer",
        name: Optional[str] = None,
        timezone: str = "UTC",
        availability: Optional[dict] = None,
        company_id: Optional[str] = None,
        availability_preference: str = "personal",
        blocked_ranges: Optional[list] = None,
        blocked_dates: Optional[list] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        user = User(
            id=user_id,
            email=f"{role}-{user_id[:8]}@test.com",
            name=name or f"Test {role}",
            role=role,
            timezone=timezone,
            availability=availability,
            company_id=company_id,
            availability_preference=availability_preference,
            blocked_ranges=blocked_ranges or [],
            blocked_dates=blocked_dates or [],
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_project(db_session):
    """Factory that creates a Project with one subproject.

    Usage:
        project = await make_project(pro, time_mode="hours", execution={"value": 2, "unit": "hours"})
    """
    async def _factory(
        professional: User,
        time_mode: str = "days",
        execution: Optional[dict] = None,
        buffer: Optional[dict] = None,
        intake: Optional[dict] = None,
        category: Optional[str] = None,
        resource_ids: Optional[list[str]] = None,
        min_resources: int = 1,
        min_overlap_percentage: float = 90.0,
        preparation_duration: Optional[dict] = None,
        post_booking_questions: Optional[list] = None,
    ) -> Project:
        subproject = {
            "name": "Standard",
            "pricing": {"type": "rfq"},
            "execution_duration": execution or {"value": 1, "unit": "days"},
            "buffer_duration": buffer,
            "intake_duration": intake,
            "warranty_years": 1,
        }
        project = Project(
            id=str(uuid.uuid4()),
            professional_id=professional.id,
            title="Bathroom renovation",
            category=category,
            time_mode=time_mode,
            resource_ids=resource_ids or [],
            min_resources=min_resources,
            min_overlap_percentage=min_overlap_percentage,
            preparation_duration=preparation_duration,
            subprojects=[subproject],
            post_booking_questions=post_booking_questions or [],
        )
        db_session.add(project)
        await db_session.flush()
        return project

    return _factory


@pytest.fixture
def make_booking(db_session):
    """Factory that inserts a Booking directly in a given status."""
    async def _factory(
        customer: User,
        professional: User,
        project: Optional[Project] = None,
        status: str = "rfq",
        quote_amount: Optional[Decimal] = None,
        requested_start: Optional[datetime] = None,
        **fields,
    ) -> Booking:
        fields.setdefault("assigned_resource_ids", [])
        booking = Booking(
            id=str(uuid.uuid4()),
            booking_type="project" if project else "professional",
            status=status,
            customer_id=customer.id,
            professional_id=professional.id,
            project_id=project.id if project else None,
            subproject_index=0 if project else None,
            rfq_data={"description": "Fix it"},
            requested_start=requested_start,
            quote_amount=quote_amount,
            quote_currency="EUR" if quote_amount is not None else None,
            quote_submitted_at=datetime.now(timezone.utc) if quote_amount is not None else None,
            **fields,
        )
        db_session.add(booking)
        await db_session.flush()
        return booking

    return _factory
