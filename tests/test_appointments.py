from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from notifywise import models  # noqa: F401
from notifywise import services
from notifywise.db import Base, enable_sqlite_wal
from notifywise.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError

NOW = datetime(2030, 1, 15, 8, 0)


def make_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test_notifywise.db'}",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_wal(engine)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def make_session(tmp_path):
    return make_session_factory(tmp_path)()


def make_business(db, owner="owner-1", timezone_name="UTC"):
    return services.create_business(
        db,
        owner_id=owner,
        name="Glow Studio",
        whatsapp_number="+212 612 345 678",
        timezone_name=timezone_name,
    )


def make_client(db, business_id, number="+1 555 123 4567"):
    return services.create_client(
        db,
        business_id,
        first_name="Sara",
        last_name="Amrani",
        whatsapp_number=number,
    )


def book(db, business_id, hour, minute=0, duration_min=60, day=15, **kwargs):
    return services.schedule(
        db,
        business_id,
        service="Haircut",
        starts_at=datetime(2030, 1, day, hour, minute),
        duration_min=duration_min,
        now=NOW,
        **kwargs,
    )


def test_schedule_sets_interval_and_initial_status(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)

    appointment = book(db, business.id, 10, duration_min=45, price=25)

    assert appointment.status == "scheduled"
    assert appointment.ends_at == datetime(2030, 1, 15, 10, 45)
    assert appointment.currency == "USD"
    events = services.list_status_events(db, business.id, appointment.id)
    assert [(e.from_status, e.to_status) for e in events] == [(None, "scheduled")]


def test_overlapping_booking_is_rejected_with_conflicting_interval(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    first = book(db, business.id, 10)

    with pytest.raises(ConflictError) as exc_info:
        book(db, business.id, 10, minute=30)

    err = exc_info.value
    assert err.conflicting_id == first.id
    assert err.conflicting_start == datetime(2030, 1, 15, 10, 0)
    assert err.conflicting_end == datetime(2030, 1, 15, 11, 0)
    assert err.to_dict()["conflicting_start"] == "2030-01-15T10:00:00"


def test_back_to_back_bookings_do_not_conflict(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    book(db, business.id, 10)

    second = book(db, business.id, 11)
    earlier = book(db, business.id, 9)

    assert second.starts_at == datetime(2030, 1, 15, 11, 0)
    assert earlier.ends_at == datetime(2030, 1, 15, 10, 0)


def test_cancelled_appointment_frees_its_slot(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    first = book(db, business.id, 10)
    services.cancel(db, business.id, first.id)

    ok, conflict = services.check_slot_available(db, business.id, datetime(2030, 1, 15, 10, 15), 30)
    assert ok is True
    assert conflict is None
    assert book(db, business.id, 10).id != first.id


def test_bookings_of_other_businesses_never_conflict(tmp_path):
    db = make_session(tmp_path)
    first = make_business(db, owner="owner-1")
    second = make_business(db, owner="owner-2")
    book(db, first.id, 10)

    assert book(db, second.id, 10).business_id == second.id


def test_stale_snapshot_booking_is_reported_as_conflict(tmp_path):
    factory = make_session_factory(tmp_path)
    setup = factory()
    business = make_business(setup)
    setup.close()

    slow = factory()
    fast = factory()
    ok, _ = services.check_slot_available(slow, business.id, datetime(2030, 1, 15, 10, 0), 60)
    assert ok is True

    book(fast, business.id, 10)

    with pytest.raises(ConflictError):
        book(slow, business.id, 10, minute=30)

    slow.close()
    fast.close()


def test_past_dates_are_rejected_but_earlier_today_is_allowed(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)

    with pytest.raises(ValidationError) as exc_info:
        book(db, business.id, 10, day=14)
    assert exc_info.value.field == "starts_at"

    same_day = book(db, business.id, 6)
    assert same_day.starts_at == datetime(2030, 1, 15, 6, 0)


def test_duration_bounds(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)

    with pytest.raises(ValidationError):
        book(db, business.id, 10, duration_min=10)
    with pytest.raises(ValidationError):
        book(db, business.id, 10, duration_min=481)
    assert book(db, business.id, 10, duration_min=480).duration_min == 480


def test_reschedule_ignores_its_own_interval_and_checks_others(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    first = book(db, business.id, 10)
    second = book(db, business.id, 12)

    moved = services.reschedule(
        db, business.id, first.id, datetime(2030, 1, 15, 10, 30), now=NOW
    )
    assert moved.ends_at == datetime(2030, 1, 15, 11, 30)

    with pytest.raises(ConflictError) as exc_info:
        services.reschedule(db, business.id, first.id, datetime(2030, 1, 15, 11, 45), now=NOW)
    assert exc_info.value.conflicting_id == second.id

    unchanged = services.get_appointment(db, business.id, first.id)
    assert unchanged.starts_at == datetime(2030, 1, 15, 10, 30)


def test_terminal_appointment_cannot_be_rescheduled(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)
    services.cancel(db, business.id, appointment.id)

    with pytest.raises(InvalidTransitionError):
        services.reschedule(db, business.id, appointment.id, datetime(2030, 1, 16, 10), now=NOW)


def test_status_transitions_are_monotonic(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)

    services.update_status(db, business.id, appointment.id, "confirmed")
    completed = services.update_status(db, business.id, appointment.id, "completed")
    assert completed.status == "completed"

    for target in ("scheduled", "confirmed", "cancelled", "completed"):
        with pytest.raises(InvalidTransitionError) as exc_info:
            services.update_status(db, business.id, appointment.id, target)
        assert exc_info.value.from_status == "completed"

    events = services.list_status_events(db, business.id, appointment.id)
    assert [e.to_status for e in events] == ["scheduled", "confirmed", "completed"]


def test_confirmed_cannot_go_back_to_scheduled(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)
    services.update_status(db, business.id, appointment.id, "confirmed")

    with pytest.raises(InvalidTransitionError):
        services.update_status(db, business.id, appointment.id, "scheduled")


def test_same_status_is_a_noop_for_open_appointments(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)

    again = services.update_status(db, business.id, appointment.id, "scheduled")

    assert again.status == "scheduled"
    assert len(services.list_status_events(db, business.id, appointment.id)) == 1


def test_unknown_status_is_a_validation_error(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)

    with pytest.raises(ValidationError):
        services.update_status(db, business.id, appointment.id, "archived")


def test_completion_updates_client_counters(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    client = make_client(db, business.id)
    appointment = book(db, business.id, 10, client_id=client.id)

    services.update_status(db, business.id, appointment.id, "completed")

    refreshed = services.get_client(db, business.id, client.id)
    assert refreshed.total_appointments == 1
    assert refreshed.last_appointment_at == datetime(2030, 1, 15, 10, 0)


def test_cross_business_access_is_not_found(tmp_path):
    db = make_session(tmp_path)
    owner = make_business(db, owner="owner-1")
    other = make_business(db, owner="owner-2")
    appointment = book(db, owner.id, 10)

    with pytest.raises(NotFoundError):
        services.get_appointment(db, other.id, appointment.id)
    with pytest.raises(NotFoundError):
        services.update_status(db, other.id, appointment.id, "confirmed")
    with pytest.raises(NotFoundError):
        services.reschedule(db, other.id, appointment.id, datetime(2030, 1, 16, 10), now=NOW)

    assert services.get_appointment(db, owner.id, appointment.id).status == "scheduled"


def test_deleted_appointment_disappears_and_frees_slot(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)

    services.delete_appointment(db, business.id, appointment.id)

    with pytest.raises(NotFoundError):
        services.get_appointment(db, business.id, appointment.id)
    assert book(db, business.id, 10).id != appointment.id


def test_list_for_business_filters_sorts_and_paginates(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    for hour in (14, 9, 11, 16):
        book(db, business.id, hour)
    cancelled = book(db, business.id, 10, day=16)
    services.cancel(db, business.id, cancelled.id)

    rows, total = services.list_for_business(db, business.id, page=1, page_size=2)
    assert total == 5
    assert [r.starts_at.hour for r in rows] == [9, 11]

    rows, total = services.list_for_business(db, business.id, sort="starts_at", order="desc", page=2, page_size=2)
    assert [r.starts_at.hour for r in rows] == [14, 11]

    rows, total = services.list_for_business(db, business.id, status="cancelled")
    assert total == 1
    assert rows[0].id == cancelled.id

    rows, total = services.list_for_business(
        db,
        business.id,
        date_from=datetime(2030, 1, 15, 10, 0),
        date_to=datetime(2030, 1, 15, 15, 0),
    )
    assert [r.starts_at.hour for r in rows] == [11, 14]

    with pytest.raises(ValidationError):
        services.list_for_business(db, business.id, sort="nope")


def test_stats_use_business_local_boundaries(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    book(db, business.id, 10)
    later = book(db, business.id, 10, day=20)
    services.schedule(
        db,
        business.id,
        service="Color",
        starts_at=datetime(2030, 2, 3, 9, 0),
        now=NOW,
    )
    services.cancel(db, business.id, later.id)

    result = services.stats(db, business.id, as_of=datetime(2030, 1, 15, 9, 0))

    assert result == {
        "total": 3,
        "today": 1,
        "this_month": 2,
        "upcoming": 2,
        "completed": 0,
        "cancelled": 1,
    }


def test_record_reminder_upserts_per_kind(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 10)

    services.record_reminder(db, business.id, appointment.id, "reminder-24h", "sent", message_id=7)
    services.record_reminder(db, business.id, appointment.id, "reminder-24h", "delivered")
    services.record_reminder(db, business.id, appointment.id, "confirmation", "failed", message_id=3)

    db.refresh(appointment)
    reminders = {r.kind: (r.result, r.message_id) for r in appointment.reminders}
    assert reminders == {"reminder-24h": ("delivered", 7), "confirmation": ("failed", 3)}

    with pytest.raises(ValidationError):
        services.record_reminder(db, business.id, appointment.id, "reminder-1h", "sent")


def test_one_active_business_per_owner(tmp_path):
    db = make_session(tmp_path)
    first = make_business(db, owner="owner-1")

    with pytest.raises(ConflictError):
        make_business(db, owner="owner-1")

    services.deactivate_business(db, first.id)
    assert make_business(db, owner="owner-1").id != first.id


def test_client_numbers_are_normalized_and_unique(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    client = make_client(db, business.id, number="0612345678")
    assert client.whatsapp_number == "212612345678"

    with pytest.raises(ConflictError):
        make_client(db, business.id, number="+212 612-345-678")

    same = services.find_or_create_client(
        db, business.id, first_name="S", last_name="A", whatsapp_number="212612345678"
    )
    assert same.id == client.id

    with pytest.raises(ValidationError):
        make_client(db, business.id, number="12345")


def test_list_clients_search(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    make_client(db, business.id, number="15551234567")
    services.create_client(
        db, business.id, first_name="Omar", last_name="Benali", whatsapp_number="15557654321"
    )

    rows, total = services.list_clients(db, business.id, search="oma", sort="first_name", order="asc")

    assert total == 1
    assert rows[0].full_name == "Omar Benali"
    assert rows[0].initials == "OB"


def test_client_stats_use_business_local_month(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db, timezone_name="Europe/Paris")
    created = [
        datetime(2030, 1, 31, 23, 15),
        datetime(2030, 1, 31, 22, 0),
        datetime(2030, 1, 10, 9, 0),
        datetime(2030, 1, 31, 23, 20),
    ]
    clients = [
        make_client(db, business.id, number=f"1555000000{i}") for i in range(len(created))
    ]
    for client, created_at in zip(clients, created):
        client.created_at = created_at
    db.commit()
    services.deactivate_client(db, business.id, clients[3].id)

    result = services.client_stats(db, business.id, as_of=datetime(2030, 1, 31, 23, 30))

    assert result == {"total_clients": 3, "new_this_month": 1, "new_this_week": 2}


def test_appointment_derived_flags(tmp_path):
    db = make_session(tmp_path)
    business = make_business(db)
    appointment = book(db, business.id, 23, minute=30, duration_min=30)

    assert appointment.is_upcoming(NOW) is True
    assert appointment.is_today(NOW) is True
    # 23:30 UTC is already the next day in Paris.
    assert appointment.is_today(NOW, "Europe/Paris") is False

    services.update_status(db, business.id, appointment.id, "no-show")
    assert appointment.is_terminal is True
    assert appointment.is_upcoming(NOW) is False
