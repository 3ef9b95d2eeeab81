"""Tests for notifications.Notifier with smtplib patched out."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from notifications import Notifier


@pytest.fixture
def order():
    return {
        "unique_id": "ORD-AB12CD34",
        "batch_id": None,
        "customer_full_name": "Test Customer",
        "customer_email": "test.customer@gmail.com",
        "customer_phone": "+383 49 000 000",
        "customer_address": "Rr. Nena Tereze 12",
        "customer_city": "Prishtina",
        "customer_country": "kosovo",
        "product_name": "Runner",
        "product_price": 29.99,
        "product_size": "42",
        "quantity": 2,
        "shipping_fee": 2.40,
        "total_amount": 62.38,
    }


def test_without_smtp_host_nothing_is_sent(order):
    notifier = Notifier(host=None, admin_email="admin@gmail.com")
    with patch("notifications.smtplib.SMTP") as smtp:
        notifier.order_placed(order)
    smtp.assert_not_called()


def test_order_placed_mails_customer_and_admin(order):
    notifier = Notifier(host="smtp.example.com", admin_email="admin@gmail.com")
    with patch("notifications.smtplib.SMTP") as smtp:
        notifier.order_placed(order)

    server = smtp.return_value.__enter__.return_value
    sent = [call.args[0] for call in server.send_message.call_args_list]
    assert [m["To"] for m in sent] == ["test.customer@gmail.com", "admin@gmail.com"]
    assert sent[0]["Subject"] == "Order Confirmation - ORD-AB12CD34"
    assert "€62.38" in sent[0].get_content()


def test_batch_subject_counts_items(order):
    second = dict(order, unique_id="ORD-ZZ99YY88", batch_id="BATCH-1-ABCDEFGHI")
    first = dict(order, batch_id="BATCH-1-ABCDEFGHI")
    notifier = Notifier(host="smtp.example.com", admin_email=None)
    notifier.send = MagicMock(return_value=True)

    notifier.batch_placed([first, second], 124.76)

    to, subject, body = notifier.send.call_args_list[0].args
    assert subject == "Order Confirmation - 2 Items Ordered"
    assert "ORD" not in subject
    assert "€124.76" in body


def test_smtp_failure_is_logged_not_raised(order, caplog):
    notifier = Notifier(host="smtp.example.com")
    with patch("notifications.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
        assert notifier.send("test.customer@gmail.com", "hello", "body") is False
    assert "Failed to send email" in caplog.text


def test_status_changed_names_both_states(order):
    notifier = Notifier(host="smtp.example.com")
    notifier.send = MagicMock(return_value=True)
    notifier.status_changed(order, "pending", "shipped")
    to, subject, body = notifier.send.call_args.args
    assert to == "test.customer@gmail.com"
    assert "from pending to shipped" in body
