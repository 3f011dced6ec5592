"""
レンタル料金計算エンジン（コアモジュール）。
バリアントに設定された課金単位（時間/日/週/月）から適用料金を選び、期間に応じて按分する。
あわせてクーポン割引と見積合計の計算もここで行う。
"""

import math
from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from constants import DAYS_PER_MONTH, DAYS_PER_WEEK, HOURS_PER_DAY
from models import Coupon, RentalPrice


class Rate(NamedTuple):
    """課金単位ごとの料金（RentalPrice + RentalPeriod の必要部分）"""
    unit: str
    duration: int
    price: float


def round_currency(amount: float) -> float:
    """金額を小数第2位で四捨五入する（0.5 は常に切り上げ）"""
    return math.floor(amount * 100 + 0.5) / 100


def _find_unit(rates: list[Rate], unit: str) -> Optional[Rate]:
    for rate in rates:
        if rate.unit.upper() == unit and rate.duration == 1:
            return rate
    return None


def price_for_interval(rates: list[Rate], rental_start: datetime, rental_end: datetime) -> float:
    """
    レンタル期間に対する1点あたりの料金を計算する。

    【アルゴリズム】（上から順に評価、按分は常に切り上げ）
    1. 1日以上 かつ 日額あり     → 日額 × ceil(日数)
    2. 24時間未満 かつ 時間額あり → 時間額 × ceil(時間数)
    3. 週額あり かつ 1日以上     → 週額 × max(1, ceil(日数 / 7))
    4. 月額あり かつ 1日以上     → 月額 × max(1, ceil(日数 / 30))
    5. それ以外は 日額 → 時間額 → 週額 → 月額 → 最初の料金 の順でフォールバックし、
       時間単位なら時間数、それ以外は日数で按分する
    6. 料金が1件もなければ 0

    評価順は契約の一部であり、入れ替えると実際の請求額が変わる。
    例えば日額のみの商品を24時間未満で借りると 5. に落ち、1日分が請求される。

    Args:
        rates:        バリアントの料金一覧
        rental_start: 開始日時
        rental_end:   終了日時（rental_start より後であることは呼び出し側が保証する）

    Returns:
        1点あたりの料金
    """
    if not rates:
        return 0

    duration_hours = (rental_end - rental_start).total_seconds() / 3600
    duration_days = duration_hours / HOURS_PER_DAY

    daily = _find_unit(rates, "DAY")
    hourly = _find_unit(rates, "HOUR")
    weekly = _find_unit(rates, "WEEK")
    monthly = _find_unit(rates, "MONTH")

    if duration_days >= 1 and daily:
        return daily.price * math.ceil(duration_days)
    if duration_hours < HOURS_PER_DAY and hourly:
        return hourly.price * math.ceil(duration_hours)
    if weekly and duration_days >= 1:
        return weekly.price * max(1, math.ceil(duration_days / DAYS_PER_WEEK))
    if monthly and duration_days >= 1:
        return monthly.price * max(1, math.ceil(duration_days / DAYS_PER_MONTH))

    fallback = daily or hourly or weekly or monthly or rates[0]
    if fallback.unit.upper() == "HOUR":
        return fallback.price * math.ceil(duration_hours)
    return fallback.price * math.ceil(duration_days)


def load_rates(db: Session, variant_id: int) -> list[Rate]:
    """バリアントに設定された料金を課金単位付きで読み込む"""
    prices = db.scalars(
        select(RentalPrice)
        .options(joinedload(RentalPrice.period))
        .where(RentalPrice.variant_id == variant_id)
        .order_by(RentalPrice.id)
    ).all()
    return [Rate(p.period.unit, p.period.duration, p.price) for p in prices]


def compute_rental_price(db: Session, variant_id: int, rental_start: datetime, rental_end: datetime) -> float:
    """バリアントIDとレンタル期間から1点あたりの料金を返す（料金未設定なら 0）"""
    return price_for_interval(load_rates(db, variant_id), rental_start, rental_end)


# ─────────────────────────────────────────
# クーポン・見積合計
# ─────────────────────────────────────────

def calculate_coupon_discount(coupon: Optional[Coupon], subtotal: float) -> float:
    """
    クーポン割引額を計算する。
    - FLAT:       min(額面, 小計)  … 合計がマイナスにならない
    - PERCENTAGE: min(小計 × 割合 / 100, 上限額)  … 上限額未設定なら上限なし
    """
    if coupon is None:
        return 0
    if coupon.type == "FLAT":
        return min(coupon.value, subtotal)
    pct = subtotal * coupon.value / 100
    if coupon.max_discount is not None:
        return min(pct, coupon.max_discount)
    return pct


def coupon_is_applicable(coupon: Coupon, now: datetime) -> bool:
    """有効フラグと有効期間（開始・終了とも任意）を満たすか"""
    if not coupon.is_active:
        return False
    if coupon.valid_from is not None and now < coupon.valid_from:
        return False
    if coupon.valid_until is not None and now > coupon.valid_until:
        return False
    return True


def compute_quotation_totals(items, coupon: Optional[Coupon], delivery_charge: Optional[float]) -> dict:
    """
    見積（または受注）の明細から小計・割引・配送料・合計を算出する。
    items は quantity と price を持つオブジェクトの列。
    """
    subtotal = sum(i.quantity * i.price for i in items)
    discount = calculate_coupon_discount(coupon, subtotal)
    delivery = delivery_charge or 0
    total = max(0, subtotal - discount + delivery)
    return {
        "subtotal":        subtotal,
        "discount":        discount,
        "delivery_charge": delivery,
        "total":           total,
    }
