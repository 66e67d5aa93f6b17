from __future__ import annotations

import threading
from types import SimpleNamespace

from app.services.email import build_health_summary_email, build_notification_email
from app.services.email_dispatcher import EmailDispatcher, EmailJob


def _job(**overrides) -> EmailJob:  # noqa: ANN003
    values = {"to": "staff@medcure.test", "subject": "Alert", "body": "text"}
    values.update(overrides)
    return EmailJob(**values)


def test_deliver_retries_until_success() -> None:
    attempts: list[str] = []
    delivered: list[EmailJob] = []

    def flaky_sender(to, subject, body, *, html_body=None):  # noqa: ANN001
        attempts.append(to)
        return len(attempts) >= 3

    dispatcher = EmailDispatcher(flaky_sender, max_attempts=3, retry_delay_seconds=0, on_delivered=delivered.append)
    job = _job(notification_id="n-1")

    assert dispatcher.deliver(job) is True
    assert len(attempts) == 3
    assert delivered == [job]
    assert dispatcher.counters()["sent"] == 1


def test_deliver_gives_up_after_max_attempts() -> None:
    def failing_sender(to, subject, body, *, html_body=None):  # noqa: ANN001
        raise OSError("connection refused")

    dispatcher = EmailDispatcher(failing_sender, max_attempts=2, retry_delay_seconds=0)

    assert dispatcher.deliver(_job()) is False
    assert dispatcher.counters()["failed"] == 1


def test_full_queue_drops_jobs() -> None:
    dispatcher = EmailDispatcher(lambda *_a, **_k: True, max_size=1)

    assert dispatcher.submit(_job()) is True
    assert dispatcher.submit(_job()) is False
    counters = dispatcher.counters()
    assert counters["dropped"] == 1
    assert counters["pending"] == 1


def test_worker_thread_drains_queue() -> None:
    done = threading.Event()

    def sender(to, subject, body, *, html_body=None):  # noqa: ANN001
        done.set()
        return True

    dispatcher = EmailDispatcher(sender, retry_delay_seconds=0)
    dispatcher.start()
    try:
        assert dispatcher.submit(_job()) is True
        assert done.wait(timeout=5)
    finally:
        dispatcher.stop(timeout=5)

    assert dispatcher.running is False
    assert dispatcher.counters()["sent"] == 1


def test_callback_errors_do_not_fail_delivery() -> None:
    def broken_callback(_job) -> None:  # noqa: ANN001
        raise RuntimeError("db down")

    dispatcher = EmailDispatcher(lambda *_a, **_k: True, on_delivered=broken_callback)
    assert dispatcher.deliver(_job()) is True


def test_notification_email_escapes_content() -> None:
    notification = SimpleNamespace(title="<b>Out of Stock</b>", message="Amoxicillin & co", priority=1)

    subject, body, html_body = build_notification_email(notification, "Ana")

    assert subject == "[MedCure] <b>Out of Stock</b>"
    assert "Hello Ana" in body
    assert "&lt;b&gt;Out of Stock&lt;/b&gt;" in html_body
    assert "CRITICAL" in html_body


def test_health_summary_subject_reflects_highest_priority() -> None:
    items = [
        SimpleNamespace(title="Low Stock Alert", message="Paracetamol is low", priority=2),
        SimpleNamespace(title="Product Expiry Warning", message="Ibuprofen expires", priority=2),
    ]

    subject, body, _ = build_health_summary_email("Ben", items)

    assert subject == "[MedCure] WARNING - Pharmacy Health Report (2 issues)"
    assert "(0 critical, 2 high)" in body
