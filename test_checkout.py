"""Tests for the cart → quotation → order workflow."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import checkout
from blocklist import BlockedVendorRepository
from errors import (
    EmptyCart, InvalidCoupon, InvalidDateRange, InvalidQuantity, InvalidTransition, NotFound,
    UnpriceableVariant, VendorBlocked,
)
from models import (
    ActivityLog, CartItem, Coupon, Invoice, Payment, Quotation, QuotationItem, RentalOrder,
)
from schemas import PaymentDetails

START = datetime(2026, 3, 1, 10, 0)
ONE_DAY = START + timedelta(days=1)


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def _fill_cart(db, m) -> None:
    """Vendor A: camera 500 + tripod 300 (subtotal 800). Vendor B: speaker 300."""
    checkout.add_to_cart(db, m.customer_id, m.camera_id, 1, START, ONE_DAY)
    checkout.add_to_cart(db, m.customer_id, m.speaker_id, 1, START, ONE_DAY)
    checkout.add_to_cart(db, m.customer_id, m.tripod_id, 1, START, ONE_DAY)


def _sent_quotation(db, m) -> int:
    """Submit a single-vendor cart and mark the quotation SENT."""
    checkout.add_to_cart(db, m.customer_id, m.camera_id, 2, START, ONE_DAY)
    result = checkout.submit_quotation(db, m.customer_id, delivery_charge_per_vendor={m.vendor_a_id: 100})
    quotation_id = result.quotation_ids[0]
    checkout.quotation_action(db, m.vendor_a_id, quotation_id, "send")
    return quotation_id


class TestAddToCart:
    def test_creates_line_with_frozen_price(self, db, marketplace) -> None:
        item = checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, START + timedelta(days=2))

        assert item.quantity == 1
        assert item.price == 1000

    def test_same_interval_merges_quantity(self, db, marketplace) -> None:
        checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)
        item = checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)

        assert item.quantity == 2
        assert _count(db, CartItem) == 1

    def test_different_interval_is_separate_line(self, db, marketplace) -> None:
        checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)
        checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, START + timedelta(hours=3))

        assert _count(db, CartItem) == 2
        assert checkout.get_cart_count(db, marketplace.customer_id) == 2

    def test_end_equal_to_start_is_rejected(self, db, marketplace) -> None:
        with pytest.raises(InvalidDateRange):
            checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, START)

        assert _count(db, CartItem) == 0

    def test_end_before_start_is_rejected(self, db, marketplace) -> None:
        with pytest.raises(InvalidDateRange):
            checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, ONE_DAY, START)

    def test_zero_quantity_is_rejected(self, db, marketplace) -> None:
        with pytest.raises(InvalidQuantity):
            checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 0, START, ONE_DAY)

    def test_unpriced_variant(self, db, marketplace) -> None:
        with pytest.raises(UnpriceableVariant):
            checkout.add_to_cart(db, marketplace.customer_id, marketplace.lamp_id, 1, START, ONE_DAY)

        assert _count(db, CartItem) == 0

    def test_unknown_variant(self, db, marketplace) -> None:
        with pytest.raises(NotFound):
            checkout.add_to_cart(db, marketplace.customer_id, 9999, 1, START, ONE_DAY)

    def test_blocked_vendor(self, db, marketplace) -> None:
        BlockedVendorRepository(db).block(marketplace.vendor_b_id)

        with pytest.raises(VendorBlocked):
            checkout.add_to_cart(db, marketplace.customer_id, marketplace.speaker_id, 1, START, ONE_DAY)

    def test_invalidates_cached_listings(self, db, marketplace) -> None:
        with patch("checkout.views.invalidate") as invalidate:
            checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)

        invalidate.assert_called_once_with("/cart", "/products")


class TestCartEditing:
    def test_groups_by_vendor_in_cart_order(self, db, marketplace) -> None:
        _fill_cart(db, marketplace)

        groups = checkout.get_cart(db, marketplace.customer_id)

        assert [g.vendor_id for g in groups] == [marketplace.vendor_a_id, marketplace.vendor_b_id]
        assert groups[0].subtotal == 800
        assert [i.product_name for i in groups[0].items] == ["Camera", "Tripod"]
        assert groups[1].subtotal == 300

    def test_empty_cart(self, db, marketplace) -> None:
        assert checkout.get_cart(db, marketplace.customer_id) == []
        assert checkout.get_cart_count(db, marketplace.customer_id) == 0

    def test_quantity_below_one_removes_line(self, db, marketplace) -> None:
        item = checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)

        assert checkout.update_cart_item_quantity(db, marketplace.customer_id, item.id, 0) is None
        assert _count(db, CartItem) == 0

    def test_cannot_edit_another_customers_line(self, db, marketplace) -> None:
        item = checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)

        with pytest.raises(NotFound):
            checkout.remove_cart_item(db, marketplace.vendor_a_id, item.id)


class TestSubmitQuotation:
    def test_one_quotation_per_vendor(self, db, marketplace) -> None:
        _fill_cart(db, marketplace)

        result = checkout.submit_quotation(
            db,
            marketplace.customer_id,
            fulfillment_type="DELIVERY",
            delivery_address_id=marketplace.shipping_address_id,
            delivery_charge_per_vendor={marketplace.vendor_a_id: 100, marketplace.vendor_b_id: 0},
        )

        assert len(result.quotation_ids) == 2
        assert result.vendor_names == ["Alpha Rentals", "Bela"]

        quotation_a = db.get(Quotation, result.quotation_ids[0])
        quotation_b = db.get(Quotation, result.quotation_ids[1])
        assert quotation_a.vendor_id == marketplace.vendor_a_id
        assert quotation_a.status == "DRAFT"
        assert quotation_a.delivery_charge == 100
        assert {i.variant_id for i in quotation_a.items} == {marketplace.camera_id, marketplace.tripod_id}
        assert sum(i.price * i.quantity for i in quotation_a.items) == 800
        assert quotation_b.delivery_charge == 0
        assert [i.variant_id for i in quotation_b.items] == [marketplace.speaker_id]
        assert _count(db, CartItem) == 0

    def test_items_copied_verbatim(self, db, marketplace) -> None:
        checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 3, START, ONE_DAY)

        result = checkout.submit_quotation(db, marketplace.customer_id)

        line = db.scalars(select(QuotationItem).where(QuotationItem.quotation_id == result.quotation_ids[0])).one()
        assert (line.quantity, line.rental_start, line.rental_end, line.price) == (3, START, ONE_DAY, 500)

    def test_store_pickup_ignores_delivery_charges(self, db, marketplace) -> None:
        _fill_cart(db, marketplace)

        result = checkout.submit_quotation(
            db,
            marketplace.customer_id,
            fulfillment_type="STORE_PICKUP",
            delivery_charge_per_vendor={marketplace.vendor_a_id: 100},
        )

        charges = [db.get(Quotation, qid).delivery_charge for qid in result.quotation_ids]
        assert charges == [0, 0]

    def test_missing_vendor_charge_defaults_to_zero(self, db, marketplace) -> None:
        _fill_cart(db, marketplace)

        result = checkout.submit_quotation(db, marketplace.customer_id, delivery_charge_per_vendor={})

        assert [db.get(Quotation, qid).delivery_charge for qid in result.quotation_ids] == [0, 0]

    def test_empty_cart(self, db, marketplace) -> None:
        with pytest.raises(EmptyCart):
            checkout.submit_quotation(db, marketplace.customer_id)

    def test_foreign_address_is_rejected(self, db, marketplace) -> None:
        _fill_cart(db, marketplace)

        with pytest.raises(NotFound):
            checkout.submit_quotation(db, marketplace.customer_id, delivery_address_id=marketplace.pickup_address_id)

        assert _count(db, CartItem) == 3

    def test_failure_rolls_back_everything(self, db, marketplace) -> None:
        _fill_cart(db, marketplace)

        with patch.object(db, "flush", side_effect=[None, SQLAlchemyError("disk full")]):
            with pytest.raises(SQLAlchemyError):
                checkout.submit_quotation(db, marketplace.customer_id)

        assert _count(db, Quotation) == 0
        assert _count(db, QuotationItem) == 0
        assert _count(db, CartItem) == 3

    def test_concurrent_submit_of_same_cart_is_rejected(self, file_sessions) -> None:
        db, other, m = file_sessions
        _fill_cart(db, m)
        real_group = checkout._group_by_vendor
        calls = []

        def submitted_elsewhere_first(items):
            calls.append(len(items))
            if len(calls) == 1:
                checkout.submit_quotation(other, m.customer_id)
            return real_group(items)

        with patch.object(checkout, "_group_by_vendor", side_effect=submitted_elsewhere_first):
            with pytest.raises(EmptyCart):
                checkout.submit_quotation(db, m.customer_id)

        assert _count(db, Quotation) == 2
        assert _count(db, QuotationItem) == 3
        assert _count(db, CartItem) == 0


class TestConfirmPayment:
    def test_creates_exactly_one_order(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        first = checkout.confirm_payment(db, quotation_id)
        second = checkout.confirm_payment(db, quotation_id)

        assert first is not None
        assert second is None
        assert _count(db, RentalOrder) == 1
        assert db.get(Quotation, quotation_id).status == "CONFIRMED"

    def test_order_copies_items_and_charges(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        order = checkout.confirm_payment(db, quotation_id)

        assert order.quotation_id == quotation_id
        assert order.customer_id == marketplace.customer_id
        assert order.status == "CONFIRMED"
        assert order.delivery_charge == 100
        assert order.discount_amount == 0
        assert [(i.variant_id, i.quantity, i.price) for i in order.items] == [(marketplace.camera_id, 2, 500)]

    def test_draft_quotation_is_a_no_op(self, db, marketplace) -> None:
        checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)
        quotation_id = checkout.submit_quotation(db, marketplace.customer_id).quotation_ids[0]

        assert checkout.confirm_payment(db, quotation_id) is None
        assert db.get(Quotation, quotation_id).status == "DRAFT"
        assert _count(db, RentalOrder) == 0

    def test_unknown_quotation_is_a_no_op(self, db, marketplace) -> None:
        assert checkout.confirm_payment(db, 424242) is None

    def test_existing_order_is_a_no_op(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        db.add(RentalOrder(quotation_id=quotation_id, customer_id=marketplace.customer_id, status="CONFIRMED"))
        db.commit()

        assert checkout.confirm_payment(db, quotation_id) is None
        assert _count(db, RentalOrder) == 1

    def test_losing_a_race_is_a_no_op(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        duplicate = IntegrityError("INSERT INTO rental_orders", {}, Exception("UNIQUE constraint failed"))

        with patch("checkout._confirm_sent_quotation", side_effect=duplicate):
            assert checkout.confirm_payment(db, quotation_id) is None

        assert db.get(Quotation, quotation_id).status == "SENT"

    def test_discount_recomputed_from_coupon(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        coupon = Coupon(code="TEN", type="PERCENTAGE", value=10, max_discount=50, is_active=True)
        db.add(coupon)
        db.commit()
        checkout.apply_coupon(db, marketplace.customer_id, quotation_id, " ten ")

        order = checkout.confirm_payment(db, quotation_id)

        assert order.discount_amount == 50
        assert order.coupon_code == "TEN"

    def test_payment_details_create_invoice_and_payment(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        details = PaymentDetails(amount_paid=1100, payment_intent_id="pi_1", checkout_session_id="cs_1")

        order = checkout.confirm_payment(db, quotation_id, details)

        invoice = db.scalars(select(Invoice).where(Invoice.order_id == order.id)).one()
        assert invoice.status == "PAID"
        assert invoice.rental_amount == 1000
        assert invoice.total_amount == 1100
        payment = db.scalars(select(Payment)).one()
        assert payment.stripe_payment_intent_id == "pi_1"

    def test_underpayment_is_partially_paid(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        order = checkout.confirm_payment(db, quotation_id, PaymentDetails(amount_paid=500, payment_intent_id="pi_2"))

        assert db.scalars(select(Invoice).where(Invoice.order_id == order.id)).one().status == "PARTIALLY_PAID"


class TestApplyCoupon:
    def test_inactive_coupon(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        db.add(Coupon(code="OLD", type="FLAT", value=10, is_active=False))
        db.commit()

        with pytest.raises(InvalidCoupon):
            checkout.apply_coupon(db, marketplace.customer_id, quotation_id, "OLD")

    def test_unknown_code(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        with pytest.raises(InvalidCoupon):
            checkout.apply_coupon(db, marketplace.customer_id, quotation_id, "NOPE")

    def test_confirmed_quotation(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        checkout.confirm_payment(db, quotation_id)
        db.add(Coupon(code="LATE", type="FLAT", value=10, is_active=True))
        db.commit()

        with pytest.raises(InvalidTransition):
            checkout.apply_coupon(db, marketplace.customer_id, quotation_id, "LATE")


class TestQuotationAction:
    def test_send_then_confirm_creates_order(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        quotation = checkout.quotation_action(db, marketplace.vendor_a_id, quotation_id, "confirm")

        assert quotation.status == "CONFIRMED"
        assert _count(db, RentalOrder) == 1
        assert _count(db, ActivityLog) == 2

    def test_confirm_draft_is_invalid(self, db, marketplace) -> None:
        checkout.add_to_cart(db, marketplace.customer_id, marketplace.camera_id, 1, START, ONE_DAY)
        quotation_id = checkout.submit_quotation(db, marketplace.customer_id).quotation_ids[0]

        with pytest.raises(InvalidTransition):
            checkout.quotation_action(db, marketplace.vendor_a_id, quotation_id, "confirm")

    def test_confirmed_is_terminal(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        checkout.confirm_payment(db, quotation_id)

        with pytest.raises(InvalidTransition):
            checkout.quotation_action(db, marketplace.vendor_a_id, quotation_id, "cancel")

    def test_cancel_sent(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        quotation = checkout.quotation_action(db, marketplace.vendor_a_id, quotation_id, "cancel")

        assert quotation.status == "CANCELLED"
        assert checkout.confirm_payment(db, quotation_id) is None

    def test_other_vendor_cannot_act(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        with pytest.raises(NotFound):
            checkout.quotation_action(db, marketplace.vendor_b_id, quotation_id, "confirm")

    def test_cancel_after_concurrent_payment_is_rejected(self, file_sessions) -> None:
        db, other, m = file_sessions
        quotation_id = _sent_quotation(db, m)
        real_log = checkout._log_activity

        def payment_lands_first(*args):
            assert checkout.confirm_payment(other, quotation_id) is not None
            return real_log(*args)

        with patch.object(checkout, "_log_activity", side_effect=payment_lands_first):
            with pytest.raises(InvalidTransition):
                checkout.quotation_action(db, m.vendor_a_id, quotation_id, "cancel")

        db.expire_all()
        assert db.get(Quotation, quotation_id).status == "CONFIRMED"
        assert _count(db, RentalOrder) == 1
        assert _count(db, ActivityLog) == 1

    def test_send_only_moves_draft(self, file_sessions) -> None:
        db, other, m = file_sessions
        checkout.add_to_cart(db, m.customer_id, m.camera_id, 1, START, ONE_DAY)
        quotation_id = checkout.submit_quotation(db, m.customer_id).quotation_ids[0]
        real_log = checkout._log_activity
        calls = []

        def cancelled_elsewhere(*args):
            calls.append(args)
            if len(calls) == 1:
                checkout.quotation_action(other, m.vendor_a_id, quotation_id, "cancel")
            return real_log(*args)

        with patch.object(checkout, "_log_activity", side_effect=cancelled_elsewhere):
            with pytest.raises(InvalidTransition):
                checkout.quotation_action(db, m.vendor_a_id, quotation_id, "send")

        db.expire_all()
        assert db.get(Quotation, quotation_id).status == "CANCELLED"

    def test_unknown_action(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)

        with pytest.raises(InvalidTransition):
            checkout.quotation_action(db, marketplace.vendor_a_id, quotation_id, "archive")
        assert db.get(Quotation, quotation_id).status == "SENT"


class TestOrderStatus:
    def test_allowed_transitions(self, db, marketplace) -> None:
        order = checkout.confirm_payment(db, _sent_quotation(db, marketplace))

        assert checkout.update_order_status(db, marketplace.vendor_a_id, order.id, "ACTIVE").status == "ACTIVE"
        assert checkout.update_order_status(db, marketplace.vendor_a_id, order.id, "COMPLETED").status == "COMPLETED"

    def test_completed_is_terminal(self, db, marketplace) -> None:
        order = checkout.confirm_payment(db, _sent_quotation(db, marketplace))
        checkout.update_order_status(db, marketplace.vendor_a_id, order.id, "ACTIVE")
        checkout.update_order_status(db, marketplace.vendor_a_id, order.id, "COMPLETED")

        with pytest.raises(InvalidTransition):
            checkout.update_order_status(db, marketplace.vendor_a_id, order.id, "CANCELLED")

    def test_cannot_skip_to_completed(self, db, marketplace) -> None:
        order = checkout.confirm_payment(db, _sent_quotation(db, marketplace))

        with pytest.raises(InvalidTransition):
            checkout.update_order_status(db, marketplace.vendor_a_id, order.id, "COMPLETED")


class TestCustomerListings:
    def test_quotations_and_orders(self, db, marketplace) -> None:
        quotation_id = _sent_quotation(db, marketplace)
        checkout.confirm_payment(db, quotation_id)

        quotations = checkout.list_customer_quotations(db, marketplace.customer_id)
        orders = checkout.list_customer_orders(db, marketplace.customer_id)

        assert [q.id for q in quotations] == [quotation_id]
        assert quotations[0].total_amount == 1100
        assert quotations[0].vendor_company_name == "Alpha Rentals"
        assert orders[0].total_amount == 1100
        assert orders[0].rental_start == START
        assert orders[0].rental_end == ONE_DAY
