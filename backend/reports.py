"""
レポート集計モジュール。
ベンダー向けダッシュボードの KPI、売上・商品別レポート（CSV 出力対応）、請求書一覧、
スーパー管理者ダッシュボード用の受注データを pandas の DataFrame で返す。
"""

from datetime import date, datetime, time, timedelta
from typing import Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from filters import InvoiceFilter, invoice_criteria, invoice_joins
from models import (
    Invoice, OrderItem, Product, ProductVariant, Quotation, RentalOrder, User,
)
from schemas import InvoicePage, InvoiceRow

REVENUE_COLUMNS = [
    "date", "invoice_id", "order_id", "customer", "rental_amount",
    "security_deposit", "delivery_charge", "total_amount", "paid_amount", "status",
]
PRODUCT_COLUMNS = ["product_id", "product_name", "orders", "units", "revenue"]


def default_range(date_from: Optional[date], date_to: Optional[date], today: Optional[date] = None) -> tuple[date, date]:
    """期間未指定の場合は「当月1日〜今日」"""
    today = today or date.today()
    return date_from or today.replace(day=1), date_to or today


def _bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    return datetime.combine(date_from, time.min), datetime.combine(date_to + timedelta(days=1), time.min)


# ─────────────────────────────────────────
# ベンダー KPI
# ─────────────────────────────────────────

def vendor_dashboard(db: Session, vendor_id: int) -> dict:
    """受注数・貸出中件数・在庫数・売上（支払済み請求書）・直近の受注5件"""
    vendor_orders = select(RentalOrder.id).join(Quotation, RentalOrder.quotation_id == Quotation.id).where(
        Quotation.vendor_id == vendor_id
    )
    total_orders = db.scalar(select(func.count()).select_from(vendor_orders.subquery()))
    active_rentals = db.scalar(
        select(func.count()).select_from(vendor_orders.where(RentalOrder.status == "ACTIVE").subquery())
    )
    inventory_items = db.scalar(
        select(func.coalesce(func.sum(ProductVariant.quantity), 0))
        .select_from(ProductVariant)
        .join(Product, ProductVariant.product_id == Product.id)
        .where(Product.vendor_id == vendor_id)
    )
    total_revenue = db.scalar(
        select(func.coalesce(func.sum(Invoice.total_amount), 0))
        .select_from(Invoice)
        .join(RentalOrder, Invoice.order_id == RentalOrder.id)
        .join(Quotation, RentalOrder.quotation_id == Quotation.id)
        .where(Quotation.vendor_id == vendor_id, Invoice.status == "PAID")
    )
    recent = db.execute(
        select(RentalOrder.id, RentalOrder.status, RentalOrder.created_at)
        .join(Quotation, RentalOrder.quotation_id == Quotation.id)
        .where(Quotation.vendor_id == vendor_id)
        .order_by(RentalOrder.created_at.desc(), RentalOrder.id.desc())
        .limit(5)
    ).all()

    return {
        "total_orders":    total_orders or 0,
        "active_rentals":  active_rentals or 0,
        "inventory_items": inventory_items or 0,
        "total_revenue":   float(total_revenue or 0),
        "recent_orders":   [{"id": r.id, "status": r.status, "created_at": r.created_at} for r in recent],
    }


# ─────────────────────────────────────────
# 請求書一覧
# ─────────────────────────────────────────

def list_vendor_invoices(db: Session, f: InvoiceFilter) -> InvoicePage:
    criteria = invoice_criteria(f)
    total = db.scalar(invoice_joins(select(func.count(Invoice.id)).select_from(Invoice)).where(*criteria))
    rows = db.execute(
        invoice_joins(select(Invoice, User.name, User.email))
        .where(*criteria)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .offset(f.offset)
        .limit(f.limit)
    ).all()

    data = [
        InvoiceRow(
            id=inv.id,
            order_id=inv.order_id,
            rental_amount=inv.rental_amount,
            security_deposit=inv.security_deposit,
            delivery_charge=inv.delivery_charge,
            total_amount=inv.total_amount,
            paid_amount=inv.paid_amount,
            status=inv.status,
            created_at=inv.created_at,
            customer_name=name or "",
            customer_email=email or "",
        )
        for inv, name, email in rows
    ]
    return InvoicePage(data=data, total=total or 0, page=f.page, limit=f.limit)


# ─────────────────────────────────────────
# 売上・商品別レポート
# ─────────────────────────────────────────

def revenue_report(db: Session, vendor_id: int, date_from: date, date_to: date) -> tuple[dict, pd.DataFrame]:
    """
    期間内に作成された支払済み請求書の一覧と集計。

    Returns:
        (サマリー辞書, 請求書1件1行の DataFrame)
    """
    start, end = _bounds(date_from, date_to)
    rows = db.execute(
        select(Invoice, User.name)
        .join(RentalOrder, Invoice.order_id == RentalOrder.id)
        .join(Quotation, RentalOrder.quotation_id == Quotation.id)
        .join(User, RentalOrder.customer_id == User.id)
        .where(
            Quotation.vendor_id == vendor_id,
            Invoice.status == "PAID",
            Invoice.created_at >= start,
            Invoice.created_at < end,
        )
        .order_by(Invoice.created_at)
    ).all()

    df = pd.DataFrame(
        [
            {
                "date":             inv.created_at.date().isoformat(),
                "invoice_id":       inv.id,
                "order_id":         inv.order_id,
                "customer":         customer or "",
                "rental_amount":    inv.rental_amount,
                "security_deposit": inv.security_deposit,
                "delivery_charge":  inv.delivery_charge,
                "total_amount":     inv.total_amount,
                "paid_amount":      inv.paid_amount,
                "status":           inv.status,
            }
            for inv, customer in rows
        ],
        columns=REVENUE_COLUMNS,
    )
    summary = {
        "total_revenue":  float(df["paid_amount"].sum()) if not df.empty else 0.0,
        "total_invoices": len(df),
        "from":           date_from.isoformat(),
        "to":             date_to.isoformat(),
    }
    return summary, df


def product_report(db: Session, vendor_id: int, date_from: date, date_to: date) -> pd.DataFrame:
    """期間内の受注明細を商品ごとに集計する（受注件数・数量・売上）。売上の多い順。"""
    start, end = _bounds(date_from, date_to)
    rows = db.execute(
        select(
            Product.id, Product.name, OrderItem.order_id, OrderItem.quantity, OrderItem.price,
        )
        .select_from(OrderItem)
        .join(ProductVariant, OrderItem.variant_id == ProductVariant.id)
        .join(Product, ProductVariant.product_id == Product.id)
        .join(RentalOrder, OrderItem.order_id == RentalOrder.id)
        .join(Quotation, RentalOrder.quotation_id == Quotation.id)
        .where(
            Quotation.vendor_id == vendor_id,
            RentalOrder.created_at >= start,
            RentalOrder.created_at < end,
        )
    ).all()

    if not rows:
        return pd.DataFrame(columns=PRODUCT_COLUMNS)

    items = pd.DataFrame(rows, columns=["product_id", "product_name", "order_id", "quantity", "price"])
    items["line_total"] = items["quantity"] * items["price"]
    grouped = (
        items.groupby(["product_id", "product_name"], as_index=False)
        .agg(orders=("order_id", "nunique"), units=("quantity", "sum"), revenue=("line_total", "sum"))
        .sort_values("revenue", ascending=False)
        .reset_index(drop=True)
    )
    return grouped[PRODUCT_COLUMNS]


def to_csv(df: pd.DataFrame) -> str:
    """レポートを CSV 文字列にする（ヘッダー行あり・インデックスなし）"""
    return df.to_csv(index=False)


# ─────────────────────────────────────────
# スーパー管理者ダッシュボード
# ─────────────────────────────────────────

def platform_orders(db: Session) -> pd.DataFrame:
    """全受注を1行ずつ（ベンダー名・ステータス・金額付き）返す"""
    orders = db.scalars(
        select(RentalOrder).options(
            selectinload(RentalOrder.items),
            selectinload(RentalOrder.quotation).selectinload(Quotation.vendor),
        )
    ).all()
    rows = []
    for o in orders:
        subtotal = sum(i.price * i.quantity for i in o.items)
        rows.append({
            "order_id":     o.id,
            "vendor":       o.quotation.vendor.display_name,
            "status":       o.status,
            "created_at":   o.created_at,
            "subtotal":     subtotal,
            "discount":     o.discount_amount,
            "delivery":     o.delivery_charge,
            "total":        max(0, subtotal - o.discount_amount + o.delivery_charge),
        })
    return pd.DataFrame(
        rows,
        columns=["order_id", "vendor", "status", "created_at", "subtotal", "discount", "delivery", "total"],
    )


def revenue_by_vendor(orders: pd.DataFrame) -> pd.DataFrame:
    """キャンセルを除いた受注金額をベンダーごとに合計する（多い順）"""
    if orders.empty:
        return pd.DataFrame(columns=["vendor", "orders", "revenue"])
    live = orders[orders["status"] != "CANCELLED"]
    return (
        live.groupby("vendor", as_index=False)
        .agg(orders=("order_id", "count"), revenue=("total", "sum"))
        .sort_values("revenue", ascending=False)
        .reset_index(drop=True)
    )


def status_breakdown(orders: pd.DataFrame) -> pd.DataFrame:
    """受注ステータスごとの件数"""
    if orders.empty:
        return pd.DataFrame(columns=["status", "count"])
    return (
        orders.groupby("status", as_index=False)
        .agg(count=("order_id", "count"))
        .sort_values("count", ascending=False)
        .reset_index(drop=True)
    )
