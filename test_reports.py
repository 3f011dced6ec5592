"""Tests for list filters, vendor reports and dashboard aggregations."""

from __future__ import annotations

from datetime import date, datetime, timedelta

import pandas as pd
import pytest

import checkout
import reports
from filters import build_coupon_filter, build_invoice_filter, clamp_page, parse_date
from models import utcnow
from schemas import PaymentDetails

START = datetime(2026, 3, 1, 10, 0)


def _paid_order(db, m, variant_id: int, vendor_id: int, quantity: int = 1, intent: str = "pi_1"):
    checkout.add_to_cart(db, m.customer_id, variant_id, quantity, START, START + timedelta(days=1))
    quotation_id = checkout.submit_quotation(db, m.customer_id).quotation_ids[0]
    checkout.quotation_action(db, vendor_id, quotation_id, "send")
    return checkout.confirm_payment(db, quotation_id, PaymentDetails(amount_paid=10_000, payment_intent_id=intent))


class TestFilters:
    @pytest.mark.parametrize(
        ("page", "limit", "expected"),
        [
            (None, None, (1, 20)),
            (0, 0, (1, 20)),
            (-3, 5, (1, 5)),
            (2, 500, (2, 50)),
            (4, 10, (4, 10)),
        ],
    )
    def test_clamp_page(self, page, limit, expected) -> None:
        assert clamp_page(page, limit) == expected

    def test_parse_date(self) -> None:
        assert parse_date("2026-03-05") == date(2026, 3, 5)
        assert parse_date("2026-03-05T10:00:00Z") == date(2026, 3, 5)
        assert parse_date("") is None
        assert parse_date("yesterday") is None

    def test_invoice_filter_normalizes_input(self) -> None:
        f = build_invoice_filter(7, page=3, limit=10, status="  ", search=" carla ", date_from="2026-03-01")

        assert f.vendor_id == 7
        assert f.status is None
        assert f.search == "carla"
        assert f.date_from == date(2026, 3, 1)
        assert f.date_to is None
        assert f.offset == 20

    def test_coupon_filter_only_accepts_boolean_strings(self) -> None:
        assert build_coupon_filter("true").is_active is True
        assert build_coupon_filter("false").is_active is False
        assert build_coupon_filter("yes").is_active is None


class TestVendorInvoices:
    def test_only_own_invoices(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id, intent="pi_a")
        _paid_order(db, marketplace, marketplace.speaker_id, marketplace.vendor_b_id, intent="pi_b")

        page = reports.list_vendor_invoices(db, build_invoice_filter(marketplace.vendor_a_id))

        assert page.total == 1
        assert page.data[0].customer_name == "Carla Customer"
        assert page.data[0].rental_amount == 500

    def test_search_and_status(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id)

        hit = reports.list_vendor_invoices(db, build_invoice_filter(marketplace.vendor_a_id, search="CARLA", status="PAID"))
        miss = reports.list_vendor_invoices(db, build_invoice_filter(marketplace.vendor_a_id, search="nobody"))
        draft = reports.list_vendor_invoices(db, build_invoice_filter(marketplace.vendor_a_id, status="DRAFT"))

        assert hit.total == 1
        assert miss.total == 0
        assert draft.total == 0

    def test_date_to_is_inclusive(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id)
        today = utcnow().date().isoformat()

        page = reports.list_vendor_invoices(
            db, build_invoice_filter(marketplace.vendor_a_id, date_from=today, date_to=today)
        )

        assert page.total == 1

    def test_paging(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id, intent="pi_1")
        _paid_order(db, marketplace, marketplace.tripod_id, marketplace.vendor_a_id, intent="pi_2")

        page = reports.list_vendor_invoices(db, build_invoice_filter(marketplace.vendor_a_id, page=2, limit=1))

        assert page.total == 2
        assert len(page.data) == 1
        assert (page.page, page.limit) == (2, 1)


class TestVendorReports:
    def test_dashboard_kpis(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id, quantity=2)

        kpis = reports.vendor_dashboard(db, marketplace.vendor_a_id)

        assert kpis["total_orders"] == 1
        assert kpis["active_rentals"] == 0
        assert kpis["inventory_items"] == 8
        assert kpis["total_revenue"] == 1000
        assert len(kpis["recent_orders"]) == 1

    def test_revenue_report(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id)
        today = utcnow().date()

        summary, df = reports.revenue_report(db, marketplace.vendor_a_id, today, today)

        assert summary["total_invoices"] == 1
        assert summary["total_revenue"] == 10_000
        assert list(df.columns) == reports.REVENUE_COLUMNS

    def test_product_report_groups_by_product(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id, quantity=2, intent="pi_1")
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id, quantity=1, intent="pi_2")
        _paid_order(db, marketplace, marketplace.tripod_id, marketplace.vendor_a_id, quantity=1, intent="pi_3")
        today = utcnow().date()

        df = reports.product_report(db, marketplace.vendor_a_id, today, today)

        assert list(df["product_name"]) == ["Camera", "Tripod"]
        camera = df.iloc[0]
        assert (camera["orders"], camera["units"], camera["revenue"]) == (2, 3, 1500)

    def test_empty_report_csv_has_headers(self, db, marketplace) -> None:
        df = reports.product_report(db, marketplace.vendor_a_id, date(2020, 1, 1), date(2020, 1, 31))

        assert reports.to_csv(df).strip() == "product_id,product_name,orders,units,revenue"

    def test_default_range_is_month_to_date(self) -> None:
        assert reports.default_range(None, None, today=date(2026, 3, 17)) == (date(2026, 3, 1), date(2026, 3, 17))
        assert reports.default_range(date(2026, 1, 1), None, today=date(2026, 3, 17))[0] == date(2026, 1, 1)


class TestPlatformAggregations:
    def test_revenue_by_vendor_excludes_cancelled(self) -> None:
        orders = pd.DataFrame([
            {"order_id": 1, "vendor": "A", "status": "CONFIRMED", "total": 100},
            {"order_id": 2, "vendor": "A", "status": "CANCELLED", "total": 900},
            {"order_id": 3, "vendor": "B", "status": "ACTIVE", "total": 300},
        ])

        result = reports.revenue_by_vendor(orders)

        assert list(result["vendor"]) == ["B", "A"]
        assert list(result["revenue"]) == [300, 100]

    def test_status_breakdown(self) -> None:
        orders = pd.DataFrame([
            {"order_id": 1, "status": "CONFIRMED"},
            {"order_id": 2, "status": "CONFIRMED"},
            {"order_id": 3, "status": "ACTIVE"},
        ])

        result = reports.status_breakdown(orders)

        assert result.to_dict(orient="records") == [
            {"status": "CONFIRMED", "count": 2},
            {"status": "ACTIVE", "count": 1},
        ]

    def test_platform_orders(self, db, marketplace) -> None:
        _paid_order(db, marketplace, marketplace.camera_id, marketplace.vendor_a_id)

        df = reports.platform_orders(db)

        assert list(df["vendor"]) == ["Alpha Rentals"]
        assert df.iloc[0]["total"] == 500

    def test_empty_inputs(self) -> None:
        assert reports.revenue_by_vendor(pd.DataFrame()).empty
        assert reports.status_breakdown(pd.DataFrame()).empty
