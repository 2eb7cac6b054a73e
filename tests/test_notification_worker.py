import importlib.util
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from notifywise import models  # noqa: F401
from notifywise import services
from notifywise.db import Base
from notifywise.gateway import GatewayResult
from notifywise.notifications import AppointmentView, BusinessView, ClientView, NotificationDispatcher

WORKER_PATH = Path(__file__).resolve().parents[1] / "scripts" / "notification_worker.py"


def load_worker():
    spec = importlib.util.spec_from_file_location("notification_worker", WORKER_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class FakeGateway:
    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def send_text(self, destination, content):
        self.calls.append(destination)
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "ok":
            return GatewayResult(ok=True, provider_id=f"wamid-{len(self.calls)}")
        return GatewayResult(ok=False, error_text=outcome)


def test_process_once_sends_due_and_retries_failed(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test_notifywise.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    db = sessionmaker(bind=engine, autoflush=False, autocommit=False)()

    business = services.create_business(db, "owner-1", "Glow Studio", "+212612345678")
    client = services.create_client(db, business.id, "Sara", "Amrani", "0612345678")
    appointment = services.schedule(
        db, business.id, "Haircut", datetime(2099, 5, 1, 10, 0), client_id=client.id
    )
    views = (
        AppointmentView.from_model(appointment),
        ClientView.from_model(client),
        BusinessView.from_model(business),
    )

    past = datetime(2000, 1, 1)
    creation_gateway = FakeGateway(["down"])
    dispatcher = NotificationDispatcher(db, creation_gateway, clock=lambda: past)
    due = dispatcher.dispatch(
        "reminder", *views, scheduled_for=past + timedelta(hours=1), reminder_kind="24h"
    )
    failed = dispatcher.dispatch("confirmation", *views)
    assert (due.status, failed.status) == ("pending", "failed")

    gateway = FakeGateway(["ok", "ok"])
    result = load_worker().process_once(db, gateway, batch_size=10, retry_failed=True)

    assert result == {"processed": 2, "sent": 2, "failed": 0, "retried": 1}
    db.refresh(appointment)
    reminders = {r.kind: r.result for r in appointment.reminders}
    assert reminders == {"reminder-24h": "sent", "confirmation": "sent"}


def test_failed_messages_are_not_retried_back_to_back(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test_notifywise.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    db = sessionmaker(bind=engine, autoflush=False, autocommit=False)()

    business = services.create_business(db, "owner-1", "Glow Studio", "+212612345678")
    client = services.create_client(db, business.id, "Sara", "Amrani", "0612345678")
    appointment = services.schedule(
        db, business.id, "Haircut", datetime(2099, 5, 1, 10, 0), client_id=client.id
    )
    views = (
        AppointmentView.from_model(appointment),
        ClientView.from_model(client),
        BusinessView.from_model(business),
    )

    start = datetime(2099, 1, 1, 12, 0)
    clock = {"now": start}
    dispatcher = NotificationDispatcher(db, FakeGateway(), clock=lambda: clock["now"])
    pending = dispatcher.dispatch(
        "reminder", *views, scheduled_for=start + timedelta(minutes=1), reminder_kind="24h"
    )
    worker = load_worker()
    gateway = FakeGateway(["down"] * 10)

    def run():
        return worker.process_once(
            db,
            gateway,
            batch_size=10,
            retry_failed=True,
            backoff_seconds=60,
            clock=lambda: clock["now"],
        )

    clock["now"] = start + timedelta(minutes=1)
    assert run() == {"processed": 1, "sent": 0, "failed": 1, "retried": 0}
    for _ in range(3):
        assert run()["processed"] == 0
    assert len(gateway.calls) == 1

    clock["now"] += timedelta(seconds=60)
    assert run() == {"processed": 1, "sent": 0, "failed": 1, "retried": 1}
    assert run()["processed"] == 0

    clock["now"] += timedelta(seconds=120)
    assert run()["retried"] == 1

    db.refresh(pending)
    assert pending.retry_count == 2
    assert pending.can_retry is True
    assert len(gateway.calls) == 3
