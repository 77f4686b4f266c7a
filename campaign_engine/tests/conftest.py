import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import subprocess
import threading
from pathlib import Path
from typing import List, Optional

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

TEST_DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://postgres@localhost/campaign_engine_test")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from campaign_engine import database
from campaign_engine.services import sequence_service, subject_service
from campaign_engine.services.channels import Collaborators, DeliveryResult
from campaign_engine.services.sequence_service import StepInput
from campaign_engine.services.subject_service import DatabaseSubjectResolver


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


def _truncate_all() -> None:
    with database.engine.begin() as conn:
        rows = conn.execute(
            text(
                """
                SELECT tablename
                FROM pg_tables
                WHERE schemaname = 'public'
                  AND tablename <> 'alembic_version'
                """
            )
        ).fetchall()

        table_names = [row[0] for row in rows]
        if table_names:
            quoted = ", ".join([f'"public"."{name}"' for name in table_names])
            conn.execute(text(f"TRUNCATE TABLE {quoted} RESTART IDENTITY CASCADE"))


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    _ensure_database_exists(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        ["alembic", "upgrade", "head"],
        check=True,
        cwd=Path(__file__).resolve().parents[2],
        env=env,
    )

    database.configure_database()


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    _truncate_all()
    yield
    _truncate_all()


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


class RecordingChannel:
    """Fake SMS + email channel. Thread safe; optionally fails or blocks."""

    def __init__(self, *, fail_with: Optional[str] = None, raise_exc: Optional[Exception] = None):
        self.fail_with = fail_with
        self.raise_exc = raise_exc
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.sms: List[tuple] = []
        self.emails: List[tuple] = []
        self._lock = threading.Lock()
        self._counter = 0

    def _result(self) -> DeliveryResult:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return DeliveryResult(success=False, error=self.fail_with)
        with self._lock:
            self._counter += 1
            return DeliveryResult(success=True, provider_message_id=f"msg-{self._counter}")

    def send_sms(self, contact, body):
        result = self._result()
        with self._lock:
            self.sms.append((contact, body))
        return result

    def send_email(self, contact, subject, body, template_kind):
        result = self._result()
        with self._lock:
            self.emails.append((contact, subject, body, template_kind))
        return result

    @property
    def sent_count(self) -> int:
        with self._lock:
            return len(self.sms) + len(self.emails)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def collaborators(channel) -> Collaborators:
    return Collaborators(sms=channel, email=channel, resolver=DatabaseSubjectResolver())


def sms_email_steps() -> List[StepInput]:
    return [
        StepInput(step_number=1, delay_hours=0, channel="SMS", body_template="Hi {{customerName}}"),
        StepInput(
            step_number=2,
            delay_hours=24,
            channel="EMAIL_PLAIN",
            subject_template="Quick favor, {{customerFirstName}}?",
            body_template="Review us at {{reviewLink}}",
        ),
    ]


@pytest.fixture
def sequence_factory(db):
    def _make(*, org_id: int = 1, name: str = "Follow up", steps=None, **kwargs):
        row = sequence_service.create_sequence(
            org_id=org_id,
            name=name,
            steps=sms_email_steps() if steps is None else steps,
            db=db,
            **kwargs,
        )
        db.commit()
        return row

    return _make


@pytest.fixture
def subject_factory(db):
    def _make(
        *,
        org_id: int = 1,
        subject_type: str = "customer",
        subject_id: str = "77",
        name: str = "Jane Doe",
        email: Optional[str] = "jane@example.com",
        phone: Optional[str] = "+1 555 010 0199",
        attributes: Optional[dict] = None,
    ):
        row = subject_service.upsert_subject(
            org_id=org_id,
            subject_type=subject_type,
            subject_id=subject_id,
            name=name,
            email=email,
            phone=phone,
            attributes={"reviewLink": "https://example.com/r/77"} if attributes is None else attributes,
            db=db,
        )
        db.commit()
        return row

    return _make
