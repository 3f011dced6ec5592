"""
一覧画面の検索条件。
クエリパラメータを型付きの条件オブジェクトに正規化し、そこから SQLAlchemy の where 句を組み立てる。
"""

from datetime import date, datetime, time, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import or_

from constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from models import Coupon, Invoice, Quotation, RentalOrder, User


def parse_date(value: Optional[str]) -> Optional[date]:
    """YYYY-MM-DD を日付に変換する。空・不正な値は条件なし（None）として扱う。"""
    if not value or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def clamp_page(page: Optional[int], limit: Optional[int]) -> tuple[int, int]:
    """ページ番号は1以上、件数は 1〜MAX_PAGE_SIZE に丸める"""
    page = max(1, page or 1)
    limit = min(MAX_PAGE_SIZE, max(1, limit or DEFAULT_PAGE_SIZE))
    return page, limit


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


# ─────────────────────────────────────────
# 請求書（ベンダー向け）
# ─────────────────────────────────────────

class InvoiceFilter(BaseModel):
    """ベンダー向け請求書一覧の検索条件"""
    model_config = ConfigDict(frozen=True)

    vendor_id: int
    status: Optional[str] = None
    search: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def build_invoice_filter(
    vendor_id: int,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> InvoiceFilter:
    page, limit = clamp_page(page, limit)
    return InvoiceFilter(
        vendor_id=vendor_id,
        status=_clean(status),
        search=_clean(search),
        date_from=parse_date(date_from),
        date_to=parse_date(date_to),
        page=page,
        limit=limit,
    )


def invoice_criteria(f: InvoiceFilter) -> list:
    """
    InvoiceFilter を where 句のリストに変換する。
    Invoice → RentalOrder → Quotation、RentalOrder → User（顧客）の結合を前提とする。
    date_to はその日の終わりまでを含む。
    """
    criteria = [Quotation.vendor_id == f.vendor_id]
    if f.status:
        criteria.append(Invoice.status == f.status)
    if f.date_from:
        criteria.append(Invoice.created_at >= datetime.combine(f.date_from, time.min))
    if f.date_to:
        criteria.append(Invoice.created_at < datetime.combine(f.date_to + timedelta(days=1), time.min))
    if f.search:
        pattern = f"%{f.search}%"
        criteria.append(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    return criteria


def invoice_joins(stmt):
    """invoice_criteria が参照するテーブルを結合する"""
    return (
        stmt.join(RentalOrder, Invoice.order_id == RentalOrder.id)
        .join(Quotation, RentalOrder.quotation_id == Quotation.id)
        .join(User, RentalOrder.customer_id == User.id)
    )


# ─────────────────────────────────────────
# クーポン（スーパー管理者向け）
# ─────────────────────────────────────────

class CouponFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_active: Optional[bool] = None
    search: Optional[str] = None


def build_coupon_filter(is_active: Optional[str] = None, search: Optional[str] = None) -> CouponFilter:
    """is_active は "true" / "false" のみ条件として扱い、それ以外は無視する"""
    flag = None
    if is_active in ("true", "false"):
        flag = is_active == "true"
    return CouponFilter(is_active=flag, search=_clean(search))


def coupon_criteria(f: CouponFilter) -> list:
    criteria = []
    if f.is_active is not None:
        criteria.append(Coupon.is_active == f.is_active)
    if f.search:
        criteria.append(Coupon.code.ilike(f"%{f.search}%"))
    return criteria
