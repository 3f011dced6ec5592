"""
Stripe Webhook の境界処理。
署名を検証したうえで checkout.session.completed を confirm_payment に渡す。
対象外のイベントや既に処理済みの通知は「受信済み」として正常応答し、Stripe の再送を止める。
"""

import logging
from typing import Any, Optional

import stripe
from sqlalchemy.orm import Session

from checkout import confirm_payment
from constants import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from errors import InvalidWebhook
from models import RentalOrder
from schemas import PaymentDetails

logger = logging.getLogger(__name__)

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """StripeObject / dict のどちらからでも値を取り出す"""
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def parse_webhook_event(payload: bytes, signature: Optional[str], secret: str = STRIPE_WEBHOOK_SECRET):
    """署名を検証してイベントを復元する。検証できなければ InvalidWebhook。"""
    if not signature or not secret:
        raise InvalidWebhook("Invalid webhook config")
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except (ValueError, stripe.SignatureVerificationError):
        logger.warning("Rejected Stripe webhook with invalid signature")
        raise InvalidWebhook("Invalid signature")


def payment_details_from_session(session: Any) -> PaymentDetails:
    """Checkout Session から支払い情報を取り出す（金額は最小通貨単位 → 通貨単位）"""
    intent = _field(session, "payment_intent")
    intent_id = intent if isinstance(intent, str) else _field(intent, "id")
    if not intent_id:
        raise InvalidWebhook("Missing payment intent")
    return PaymentDetails(
        amount_paid=_field(session, "amount_total", 0) / 100,
        payment_intent_id=intent_id,
        checkout_session_id=_field(session, "id"),
    )


def handle_stripe_event(db: Session, event: Any) -> Optional[RentalOrder]:
    """
    Webhook イベントを処理する。

    Returns:
        新たに作成された受注。何もしなかった場合は None。
    """
    event_type = _field(event, "type")
    if event_type != "checkout.session.completed":
        logger.debug("Ignoring Stripe event %s", event_type)
        return None

    session = _field(_field(event, "data", {}), "object", {})
    raw_id = _field(_field(session, "metadata", {}), "quotationId")
    if not raw_id:
        return None
    try:
        quotation_id = int(raw_id)
    except (TypeError, ValueError):
        raise InvalidWebhook("Invalid quotationId")

    try:
        payment = payment_details_from_session(session)
    except InvalidWebhook:
        # 再送しても内容は変わらないため、記録だけして受信済みとする
        logger.warning(
            "Checkout session %s for quotation %s has no payment intent; ignored",
            _field(session, "id"), quotation_id,
        )
        return None
    return confirm_payment(db, quotation_id, payment)
