"""
データベースモデル定義モジュール。
SQLAlchemy ORM を使用してテーブル構造を定義する。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """UTC の現在時刻（タイムゾーン情報なし）を返す。DB 上の日時はすべてこの形式で保持する。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ─────────────────────────────────────────
# ユーザー・住所
# ─────────────────────────────────────────

class User(Base):
    """利用者テーブル（顧客 / ベンダー / スーパー管理者）"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    role = Column(String, nullable=False, default="CUSTOMER", comment="CUSTOMER / VENDOR / SUPER_ADMIN")
    company_name = Column(String, nullable=True, comment="ベンダーの会社名（表示名として優先）")
    created_at = Column(DateTime, default=utcnow)

    addresses = relationship("Address", back_populates="user")
    products = relationship("Product", back_populates="vendor")
    delivery_config = relationship("VendorDeliveryConfig", back_populates="vendor", uselist=False)

    @property
    def display_name(self) -> str:
        return self.company_name or self.name


class Address(Base):
    """住所テーブル。PICKUP はベンダーの集荷元住所。"""
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False, comment="SHIPPING / BILLING / PICKUP")
    name = Column(String, nullable=True)
    line1 = Column(String, nullable=False)
    line2 = Column(String, nullable=True)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    country = Column(String, nullable=False)
    pincode = Column(String, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="addresses")


# ─────────────────────────────────────────
# 商品・バリアント・レンタル料金
# ─────────────────────────────────────────

class Product(Base):
    """商品テーブル。必ず1つのベンダーに属する。"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    is_published = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    vendor = relationship("User", back_populates="products")
    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    """バリアント（サイズ・色などの具体的な構成）。在庫数とレンタル料金を持つ。"""
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=0, comment="保有在庫数")

    product = relationship("Product", back_populates="variants")
    rental_prices = relationship("RentalPrice", back_populates="variant", cascade="all, delete-orphan")


class RentalPeriod(Base):
    """課金単位の定義（例：1 DAY, 1 WEEK）。スーパー管理者が設定する。"""
    __tablename__ = "rental_periods"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    duration = Column(Integer, nullable=False, default=1)
    unit = Column(String, nullable=False, comment="HOUR / DAY / WEEK / MONTH / YEAR")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    rental_prices = relationship("RentalPrice", back_populates="period")


class RentalPrice(Base):
    """バリアント × 課金単位 の料金"""
    __tablename__ = "rental_prices"

    id = Column(Integer, primary_key=True, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False, index=True)
    period_id = Column(Integer, ForeignKey("rental_periods.id"), nullable=False)
    price = Column(Float, nullable=False, default=0.0)

    variant = relationship("ProductVariant", back_populates="rental_prices")
    period = relationship("RentalPeriod", back_populates="rental_prices")


# ─────────────────────────────────────────
# カート
# ─────────────────────────────────────────

class Cart(Base):
    """カートテーブル。顧客1人につき1つ（初回利用時に作成）。"""
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow)

    items = relationship("CartItem", back_populates="cart", order_by="CartItem.id")


class CartItem(Base):
    """
    カート明細。
    (cart, variant, rental_start, rental_end) が自然キー。同じ組み合わせの追加は数量を加算する。
    price は追加時点の単価スナップショットで、以後再計算しない。
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "variant_id", "rental_start", "rental_end", name="uq_cart_item_interval"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    rental_start = Column(DateTime, nullable=False)
    rental_end = Column(DateTime, nullable=False)
    price = Column(Float, nullable=False, comment="追加時点の単価（固定）")

    cart = relationship("Cart", back_populates="items")
    variant = relationship("ProductVariant")


# ─────────────────────────────────────────
# クーポン
# ─────────────────────────────────────────

class Coupon(Base):
    """クーポン。FLAT は定額、PERCENTAGE は割合（max_discount で上限）。"""
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, unique=True, index=True)
    type = Column(String, nullable=False, comment="FLAT / PERCENTAGE")
    value = Column(Float, nullable=False)
    max_discount = Column(Float, nullable=True, comment="PERCENTAGE の割引上限額")
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ─────────────────────────────────────────
# 見積・受注
# ─────────────────────────────────────────

class Quotation(Base):
    """
    見積テーブル。顧客1人 × ベンダー1社 に必ず限定される（ベンダー横断の見積は作らない）。
    DRAFT → SENT → CONFIRMED、または確定前に CANCELLED。
    """
    __tablename__ = "quotations"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="DRAFT")
    fulfillment_type = Column(String, nullable=False, default="DELIVERY", comment="STORE_PICKUP / DELIVERY")
    delivery_charge = Column(Float, nullable=False, default=0.0)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    delivery_address_id = Column(Integer, ForeignKey("addresses.id"), nullable=True)
    billing_address_id = Column(Integer, ForeignKey("addresses.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    customer = relationship("User", foreign_keys=[customer_id])
    vendor = relationship("User", foreign_keys=[vendor_id])
    coupon = relationship("Coupon")
    items = relationship("QuotationItem", back_populates="quotation", order_by="QuotationItem.id")
    order = relationship("RentalOrder", back_populates="quotation", uselist=False)


class QuotationItem(Base):
    """見積明細（カート明細からそのまま複製）"""
    __tablename__ = "quotation_items"

    id = Column(Integer, primary_key=True, index=True)
    quotation_id = Column(Integer, ForeignKey("quotations.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    rental_start = Column(DateTime, nullable=False)
    rental_end = Column(DateTime, nullable=False)
    price = Column(Float, nullable=False)

    quotation = relationship("Quotation", back_populates="items")
    variant = relationship("ProductVariant")


class RentalOrder(Base):
    """
    受注テーブル。見積1件につき最大1件（quotation_id の一意制約で担保）。
    coupon_code は確定時点の文字列スナップショットで、クーポンへの参照ではない。
    """
    __tablename__ = "rental_orders"

    id = Column(Integer, primary_key=True, index=True)
    quotation_id = Column(Integer, ForeignKey("quotations.id"), nullable=False, unique=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="CONFIRMED")
    fulfillment_type = Column(String, nullable=False, default="DELIVERY")
    delivery_charge = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    coupon_code = Column(String, nullable=True, comment="確定時点のクーポンコード")
    created_at = Column(DateTime, default=utcnow)

    quotation = relationship("Quotation", back_populates="order")
    customer = relationship("User")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    invoice = relationship("Invoice", back_populates="order", uselist=False)


class OrderItem(Base):
    """受注明細（確定時点の見積明細のコピー）"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("rental_orders.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    rental_start = Column(DateTime, nullable=False)
    rental_end = Column(DateTime, nullable=False)
    price = Column(Float, nullable=False)

    order = relationship("RentalOrder", back_populates="items")
    variant = relationship("ProductVariant")


class Invoice(Base):
    """請求書。決済完了（Webhook）時に受注と同時に作成される。"""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("rental_orders.id"), nullable=False, unique=True)
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rental_amount = Column(Float, nullable=False, default=0.0)
    security_deposit = Column(Float, nullable=False, default=0.0)
    delivery_charge = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    paid_amount = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default="DRAFT", comment="DRAFT / PARTIALLY_PAID / PAID")
    created_at = Column(DateTime, default=utcnow)

    order = relationship("RentalOrder", back_populates="invoice")
    payments = relationship("Payment", back_populates="invoice")


class Payment(Base):
    """決済記録"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="SUCCEEDED")
    stripe_payment_intent_id = Column(String, nullable=True)
    stripe_checkout_session_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow)

    invoice = relationship("Invoice", back_populates="payments")


# ─────────────────────────────────────────
# ベンダー設定
# ─────────────────────────────────────────

class VendorDeliveryConfig(Base):
    """ベンダーごとの配送料ポリシー"""
    __tablename__ = "vendor_delivery_configs"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    is_delivery_enabled = Column(Boolean, nullable=False, default=True)
    charge_type = Column(String, nullable=False, default="FREE", comment="FREE / FLAT / PER_KM")
    flat_charge = Column(Float, nullable=True)
    rate_per_km = Column(Float, nullable=True)
    max_delivery_km = Column(Float, nullable=True, comment="課金対象距離の上限")
    free_above_amount = Column(Float, nullable=True, comment="小計がこの額以上なら配送料無料")

    vendor = relationship("User", back_populates="delivery_config")


class BlockedVendor(Base):
    """スーパー管理者がブロックしたベンダー"""
    __tablename__ = "blocked_vendors"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    blocked_at = Column(DateTime, default=utcnow)


class ActivityLog(Base):
    """操作履歴"""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    action = Column(String, nullable=False)
    entity = Column(String, nullable=False)
    entity_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
