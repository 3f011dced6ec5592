"""
メール通知モジュール。
送信は FastAPI の BackgroundTasks から呼ばれる「送りっぱなし」処理で、
失敗してもログに残すだけで本来の処理結果には影響させない。
"""

import logging
import smtplib
from email.message import EmailMessage

from constants import APP_URL, SMTP_FROM, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER

logger = logging.getLogger(__name__)


def format_ref(number: int) -> str:
    """伝票番号の表示形式（例: #000042）"""
    return f"#{number:06d}"


def send_mail(to: str, subject: str, body: str) -> bool:
    """
    プレーンテキストのメールを1通送信する。

    Returns:
        送信できた場合 True。SMTP未設定・送信失敗の場合 False（例外は投げない）。
    """
    if not SMTP_HOST:
        logger.warning("SMTP_HOST not set; mail to %s skipped (%s)", to, subject)
        return False

    message = EmailMessage()
    message["From"] = SMTP_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)

    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=10) as smtp:
            smtp.starttls()
            if SMTP_USER:
                smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(message)
        return True
    except (smtplib.SMTPException, OSError):
        logger.error("Failed to send mail to %s (%s)", to, subject, exc_info=True)
        return False


def notify_order_placed(to: str, vendor_name: str, order_id: int, customer_name: str) -> bool:
    """決済完了で受注が作成されたことをベンダーに通知する"""
    subject = f"New order {format_ref(order_id)} from {customer_name}"
    body = (
        f"Hi {vendor_name},\n\n"
        f"{customer_name} has placed order {format_ref(order_id)}.\n"
        f"View it at {APP_URL}/vendor/orders/{order_id}\n"
    )
    return send_mail(to, subject, body)


def notify_order_status(to: str, customer_name: str, order_id: int, status: str) -> bool:
    """受注ステータスの変更を顧客に通知する"""
    subject = f"Order {format_ref(order_id)} is now {status}"
    body = (
        f"Hi {customer_name},\n\n"
        f"The status of your order {format_ref(order_id)} has been updated to {status}.\n"
        f"View it at {APP_URL}/orders/{order_id}\n"
    )
    return send_mail(to, subject, body)
