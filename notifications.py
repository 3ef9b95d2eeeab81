"""Order emails.

Sent after the order is committed, usually from a FastAPI background task.
A failed send is logged and dropped: it must never undo an order.
"""
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import List, Optional

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", "orders@localhost")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")


def _line(order: dict) -> str:
    size = order.get("product_size") or "N/A"
    return (f"{order['product_name']} (size {size}) x{order['quantity']} "
            f"@ €{order['product_price']:.2f} = €{order['total_amount']:.2f}")


class Notifier:
    def __init__(self, host: Optional[str] = SMTP_HOST, port: int = SMTP_PORT,
                 user: Optional[str] = SMTP_USER, password: Optional[str] = SMTP_PASSWORD,
                 sender: str = MAIL_FROM, admin_email: Optional[str] = ADMIN_EMAIL):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.admin_email = admin_email

    def send(self, to: Optional[str], subject: str, body: str) -> bool:
        if not to:
            logger.warning("Skipping email %r: no recipient", subject)
            return False
        if not self.host:
            logger.info("SMTP not configured, email to %s: %s", to, subject)
            return False

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                server.starttls()
                if self.user:
                    server.login(self.user, self.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email to %s: %s", to, subject)
            return False
        logger.info("Email sent to %s: %s", to, subject)
        return True

    # ------------------------- Placement -------------------------

    def order_placed(self, order: dict) -> None:
        body = "\n".join([
            f"Hello {order['customer_full_name']},",
            "",
            f"Thank you for your order {order['unique_id']}.",
            _line(order),
            f"Shipping: €{order['shipping_fee']:.2f}",
            f"Total to pay on delivery: €{order['total_amount']:.2f}",
        ])
        self.send(order["customer_email"], f"Order Confirmation - {order['unique_id']}", body)
        self.send(self.admin_email, f"New order {order['unique_id']}", self._admin_body([order]))

    def batch_placed(self, orders: List[dict], total: float) -> None:
        first = orders[0]
        body = "\n".join(
            [f"Hello {first['customer_full_name']},", "",
             f"Thank you for your order {first['batch_id']}."]
            + [_line(o) for o in orders]
            + [f"Total to pay on delivery: €{total:.2f}"]
        )
        self.send(first["customer_email"],
                  f"Order Confirmation - {len(orders)} Items Ordered", body)
        self.send(self.admin_email,
                  f"New order {first['batch_id']} ({len(orders)} items, €{total:.2f})",
                  self._admin_body(orders))

    def _admin_body(self, orders: List[dict]) -> str:
        first = orders[0]
        return "\n".join(
            [f"Customer: {first['customer_full_name']} <{first['customer_email']}>",
             f"Phone: {first['customer_phone']}",
             f"Address: {first['customer_address']}, {first['customer_city']}, "
             f"{first['customer_country'].title()}",
             ""]
            + [f"{o['unique_id']}: {_line(o)}" for o in orders]
        )

    # ------------------------- Lifecycle -------------------------

    def status_changed(self, order: dict, previous: str, current: str) -> None:
        body = "\n".join([
            f"Hello {order['customer_full_name']},",
            "",
            f"Your order {order['unique_id']} moved from {previous} to {current}.",
            _line(order),
        ])
        self.send(order["customer_email"], f"Order {order['unique_id']} is {current}", body)
