"""
init_db.py  ─ 開発用の初期データ投入

【投入内容】
  - レンタル期間マスタ（1時間 / 1日 / 1週間 / 1ヶ月）
  - ベンダー3社（集荷住所・配送設定つき）と顧客2名
  - ベンダーごとの商品・バリアント・レンタル料金
  - クーポン2件
  - ダッシュボード確認用の受注履歴（見積 → 送信 → 決済確定 を実際のワークフローで作成）
  - random.seed(42) で再現性を確保
"""

import random
from datetime import timedelta

from checkout import confirm_payment
from database import Base, SessionLocal, engine
from models import (
    Address, Coupon, Product, ProductVariant, Quotation, QuotationItem, RentalPeriod, RentalPrice,
    User, VendorDeliveryConfig, utcnow,
)
from pricing import compute_rental_price
from schemas import PaymentDetails

# 再現性確保のためシードを固定
random.seed(42)

# ─── レンタル期間マスタ ─────────────────────────────────────────────
PERIODS = [
    {"name": "1時間",  "unit": "HOUR",  "duration": 1},
    {"name": "1日",    "unit": "DAY",   "duration": 1},
    {"name": "1週間",  "unit": "WEEK",  "duration": 1},
    {"name": "1ヶ月",  "unit": "MONTH", "duration": 1},
]

# ─── ベンダー定義 ─────────────────────────────────────────────────
# フィールド説明:
#   delivery : VendorDeliveryConfig の値（charge_type = FREE / FLAT / PER_KM）
#   pickup   : 集荷元住所（PER_KM の距離計算の起点）
VENDORS = [
    {
        "name": "Asha Rao", "email": "asha@camgear.example", "company_name": "CamGear Rentals",
        "delivery": {"charge_type": "PER_KM", "rate_per_km": 12.0, "max_delivery_km": 40, "free_above_amount": 10000},
        "pickup": {"line1": "12 MG Road", "city": "Bengaluru", "state": "Karnataka", "country": "India", "pincode": "560001"},
    },
    {
        "name": "Vikram Shah", "email": "vikram@partyhire.example", "company_name": "PartyHire",
        "delivery": {"charge_type": "FLAT", "flat_charge": 250.0, "free_above_amount": 5000},
        "pickup": {"line1": "4 Linking Road", "city": "Mumbai", "state": "Maharashtra", "country": "India", "pincode": "400050"},
    },
    {
        "name": "Meera Iyer", "email": "meera@toolshed.example", "company_name": None,
        "delivery": {"charge_type": "FREE"},
        "pickup": {"line1": "88 Anna Salai", "city": "Chennai", "state": "Tamil Nadu", "country": "India", "pincode": "600002"},
    },
]

# ─── 商品マスタ ───────────────────────────────────────────────────
# rates: 期間単位 → 価格（設定しない単位は料金なし）
PRODUCT_MASTERS = [
    {"vendor": 0, "name": "Sony A7 III ボディ", "sku": "CAM-A7III", "quantity": 4,
     "rates": {"HOUR": 150, "DAY": 1800, "WEEK": 9000, "MONTH": 30000}},
    {"vendor": 0, "name": "DJI Ronin ジンバル", "sku": "GMB-RONIN", "quantity": 3,
     "rates": {"DAY": 900, "WEEK": 4500}},
    {"vendor": 1, "name": "PAスピーカーセット", "sku": "PA-SET-2K", "quantity": 6,
     "rates": {"HOUR": 300, "DAY": 2500}},
    {"vendor": 1, "name": "イベント用テント 6x6m", "sku": "TENT-66", "quantity": 10,
     "rates": {"DAY": 3200, "WEEK": 15000}},
    {"vendor": 2, "name": "電動ドリル", "sku": "DRL-18V", "quantity": 12,
     "rates": {"HOUR": 60, "DAY": 400}},
    {"vendor": 2, "name": "高圧洗浄機", "sku": "PWR-WASH", "quantity": 5,
     "rates": {"DAY": 700, "MONTH": 9000}},
]

CUSTOMERS = [
    {"name": "Rahul Menon", "email": "rahul@example.com"},
    {"name": "Priya Nair", "email": "priya@example.com"},
]

COUPONS = [
    {"code": "WELCOME10", "type": "PERCENTAGE", "value": 10, "max_discount": 500},
    {"code": "FLAT200", "type": "FLAT", "value": 200},
]

# 受注履歴の件数
HISTORY_ORDERS = 12


def seed_masters(db):
    periods = {}
    for p in PERIODS:
        period = RentalPeriod(**p)
        db.add(period)
        periods[p["unit"]] = period

    vendors = []
    for v in VENDORS:
        vendor = User(name=v["name"], email=v["email"], role="VENDOR", company_name=v["company_name"])
        vendor.addresses = [Address(type="PICKUP", name=v["name"], is_default=True, **v["pickup"])]
        vendor.delivery_config = VendorDeliveryConfig(is_delivery_enabled=True, **v["delivery"])
        db.add(vendor)
        vendors.append(vendor)

    customers = []
    for c in CUSTOMERS:
        customer = User(name=c["name"], email=c["email"], role="CUSTOMER")
        customer.addresses = [Address(
            type="SHIPPING", name=c["name"], line1="221 Residency Road", city="Bengaluru",
            state="Karnataka", country="India", pincode="560025", is_default=True,
        )]
        db.add(customer)
        customers.append(customer)

    db.add(User(name="Super Admin", email="admin@example.com", role="SUPER_ADMIN"))

    variants = []
    for pm in PRODUCT_MASTERS:
        product = Product(vendor=vendors[pm["vendor"]], name=pm["name"], is_published=True)
        variant = ProductVariant(product=product, sku=pm["sku"], quantity=pm["quantity"])
        for unit, price in pm["rates"].items():
            db.add(RentalPrice(variant=variant, period=periods[unit], price=price))
        db.add(product)
        variants.append(variant)

    for c in COUPONS:
        db.add(Coupon(**c))

    db.commit()
    print(f"✅ レンタル期間 {len(PERIODS)} 件・ベンダー {len(vendors)} 社・商品 {len(variants)} 件を登録しました。")
    return vendors, customers, variants


def seed_history(db, customers, variants):
    """見積を作成して SENT にし、決済確定（confirm_payment）で受注・請求書を作る"""
    now = utcnow().replace(minute=0, second=0, microsecond=0)
    created = 0
    for _ in range(HISTORY_ORDERS):
        customer = random.choice(customers)
        variant = random.choice(variants)
        start = now - timedelta(days=random.randint(1, 25))
        end = start + timedelta(days=random.randint(1, 6))
        quantity = random.randint(1, 3)
        price = compute_rental_price(db, variant.id, start, end)
        if price <= 0:
            continue

        quotation = Quotation(
            customer_id=customer.id,
            vendor_id=variant.product.vendor_id,
            status="SENT",
            fulfillment_type="DELIVERY",
            delivery_charge=random.choice([0, 150, 250]),
            created_at=start - timedelta(days=1),
        )
        quotation.items = [QuotationItem(
            variant_id=variant.id, quantity=quantity, rental_start=start, rental_end=end, price=price,
        )]
        db.add(quotation)
        db.commit()

        total = price * quantity + quotation.delivery_charge
        order = confirm_payment(db, quotation.id, PaymentDetails(
            amount_paid=total,
            payment_intent_id=f"pi_seed_{quotation.id}",
            checkout_session_id=f"cs_seed_{quotation.id}",
        ))
        if order is not None:
            created += 1
    print(f"✅ 受注履歴 {created} 件（請求書・支払い込み）を生成しました。")


def init_db():
    # ─── テーブル再作成 ──────────────────────────────────────────
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    print("✅ テーブルを再作成しました。")

    db = SessionLocal()
    try:
        _, customers, variants = seed_masters(db)
        seed_history(db, customers, variants)
    finally:
        db.close()


if __name__ == '__main__':
    init_db()
