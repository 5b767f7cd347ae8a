from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from models.notification import LOG_FAILED, LOG_SENT
from models.scheduling import STATUS_PENDING
from app.notification_scheduler import MAX_RETRIES, NotificationDispatcher, hours_until, setup_scheduler
from app.notification_service import list_notifications
from tests.helpers import NOW, FakeChannel, failed_log, make_appointment, make_client, make_trainer


def _people(session, **client_fields):
    trainer = make_trainer(session)
    client = make_client(session, phone="11999990000", sms_notifications=True, **client_fields)
    return trainer, client


def test_hours_until_rounds_to_nearest_hour():
    assert hours_until(NOW + timedelta(hours=24), NOW) == 24
    assert hours_until(NOW + timedelta(hours=23, minutes=31), NOW) == 24
    assert hours_until(NOW + timedelta(minutes=30), NOW) == 1
    assert hours_until(NOW + timedelta(minutes=29), NOW) == 0
    assert hours_until(NOW + timedelta(minutes=90), NOW) == 2


def test_reminders_sent_once_per_window(session, dispatcher, channels):
    trainer, client = _people(session)
    day_ahead = make_appointment(session, trainer, client, NOW + timedelta(hours=24))
    soon = make_appointment(session, trainer, client, NOW + timedelta(hours=1))
    # Unconfirmed appointments get no reminders
    make_appointment(session, trainer, client, NOW + timedelta(hours=1, minutes=2), status=STATUS_PENDING)

    assert dispatcher.process_appointment_reminders(session, now=NOW) == 2

    assert channels["email"].names() == ["send_appointment_reminder", "send_appointment_reminder"]
    assert channels["push"].names() == ["send_reminder", "send_reminder"]
    # SMS only for the one-hour reminder
    assert channels["sms"].calls == [("send_urgent_reminder", soon)]
    # No WhatsApp number on file
    assert channels["whatsapp"].calls == []

    session.refresh(day_ahead)
    session.refresh(soon)
    assert day_ahead.reminder_24h_sent and not day_ahead.reminder_1h_sent
    assert soon.reminder_1h_sent

    assert dispatcher.process_appointment_reminders(session, now=NOW + timedelta(minutes=5)) == 0
    assert len(channels["email"].calls) == 2


def test_appointments_between_windows_are_skipped(session, dispatcher, channels):
    trainer, client = _people(session)
    make_appointment(session, trainer, client, NOW + timedelta(hours=5))

    assert dispatcher.process_appointment_reminders(session, now=NOW) == 0
    assert channels["email"].calls == []


def test_reminders_respect_preferences(session, dispatcher, channels):
    trainer, client = _people(session, whatsapp="11999990000", whatsapp_notifications=True)
    client.user.email_notifications = False
    client.user.push_notifications = False
    session.commit()
    make_appointment(session, trainer, client, NOW + timedelta(hours=24))

    dispatcher.process_appointment_reminders(session, now=NOW)

    assert channels["email"].calls == []
    assert channels["push"].calls == []
    assert channels["whatsapp"].names() == ["send_reminder"]


def test_failing_channel_does_not_stop_the_others(session):
    channels = {
        "email": FakeChannel("email", raise_on_send=True),
        "sms": FakeChannel("sms"),
        "whatsapp": FakeChannel("whatsapp"),
        "push": FakeChannel("push"),
    }
    dispatcher = NotificationDispatcher(**channels)
    trainer, client = _people(session)
    appointment = make_appointment(session, trainer, client, NOW + timedelta(hours=1))

    assert dispatcher.process_appointment_reminders(session, now=NOW) == 1

    assert channels["push"].names() == ["send_reminder"]
    assert channels["sms"].names() == ["send_urgent_reminder"]
    session.refresh(appointment)
    assert appointment.reminder_1h_sent


def test_daily_summary_for_tomorrow(session, dispatcher):
    trainer, client = _people(session)
    tomorrow = NOW.replace(hour=10) + timedelta(days=1)
    make_appointment(session, trainer, client, tomorrow)
    make_appointment(session, trainer, client, tomorrow + timedelta(hours=2), status=STATUS_PENDING)
    make_appointment(session, trainer, client, tomorrow + timedelta(days=1))

    assert dispatcher.process_daily_summaries(session, now=NOW) == 1
    assert dispatcher.process_daily_summaries(session, now=NOW + timedelta(hours=1)) == 0

    inbox = list_notifications(session, client.user_id)
    assert [n.title for n in inbox] == ["Training tomorrow"]
    assert "10:00" in inbox[0].message


def test_retry_failed_notifications(session):
    channels = {
        "email": FakeChannel("email"),
        "sms": FakeChannel("sms", succeed=False),
        "whatsapp": FakeChannel("whatsapp"),
        "push": FakeChannel("push"),
    }
    dispatcher = NotificationDispatcher(**channels)
    recent = NOW - timedelta(hours=1)
    email_log = failed_log(session, channel="email", recipient="alice@example.com", created_at=recent)
    sms_log = failed_log(session, channel="sms", recipient="+5511999990000", created_at=recent)
    stale = failed_log(session, channel="email", recipient="old@example.com", created_at=NOW - timedelta(hours=30))
    exhausted = failed_log(session, channel="email", recipient="x@example.com", created_at=recent, retry_count=MAX_RETRIES)
    unknown = failed_log(session, channel="fax", recipient="555", created_at=recent)

    assert dispatcher.retry_failed_notifications(session, now=NOW) == 1

    for log in (email_log, sms_log, stale, exhausted, unknown):
        session.refresh(log)
    assert email_log.status == LOG_SENT and email_log.error_message is None
    assert sms_log.status == LOG_FAILED and sms_log.retry_count == 1
    assert stale.status == LOG_FAILED and stale.retry_count == 0
    assert exhausted.retry_count == MAX_RETRIES
    assert unknown.retry_count == MAX_RETRIES
    assert channels["email"].calls == [("retry", email_log.log_id)]


def test_confirmation_and_payment_events(session, dispatcher, channels):
    trainer, client = _people(session)
    appointment = make_appointment(session, trainer, client, NOW + timedelta(days=2))

    dispatcher.send_appointment_confirmation(session, appointment.appointment_id)
    dispatcher.send_payment_confirmation(session, appointment.appointment_id)

    assert channels["email"].names() == ["send_appointment_confirmation", "send_payment_confirmation"]
    assert channels["push"].names() == ["send_appointment_confirmation"]
    assert [n.title for n in list_notifications(session, client.user_id)] == ["Payment confirmed", "Appointment confirmed"]
    assert [n.title for n in list_notifications(session, trainer.user_id)] == ["Payment received"]


def test_welcome_notifications(session, dispatcher, channels):
    _, client = _people(session)

    dispatcher.send_welcome_notifications(session, client.user_id)

    assert channels["email"].names() == ["send_welcome"]
    assert channels["sms"].names() == ["send_welcome"]
    assert channels["whatsapp"].calls == []
    assert list_notifications(session, client.user_id)[0].title.startswith("Welcome")


def test_setup_scheduler_registers_jobs(session_factory, dispatcher):
    scheduler = setup_scheduler(dispatcher, session_factory=session_factory, scheduler=BackgroundScheduler(timezone="UTC"))

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"retry_failed_notifications", "appointment_reminders", "daily_summaries"}

    # Jobs open their own session and run against the real dispatcher
    jobs["retry_failed_notifications"].func()
    jobs["daily_summaries"].func()
