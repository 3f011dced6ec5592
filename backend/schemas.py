"""
Pydantic スキーマ定義モジュール。
APIのリクエスト/レスポンスのデータ型を定義する。
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

FulfillmentType = Literal["STORE_PICKUP", "DELIVERY"]
DeliveryChargeType = Literal["FREE", "FLAT", "PER_KM"]
CouponType = Literal["FLAT", "PERCENTAGE"]
PeriodUnit = Literal["HOUR", "DAY", "WEEK", "MONTH", "YEAR"]
OrderStatus = Literal["CONFIRMED", "ACTIVE", "COMPLETED", "CANCELLED"]


def to_utc_naive(value: datetime) -> datetime:
    """タイムゾーン付き日時を UTC に揃えてタイムゾーン情報を外す（DB の保持形式）"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ─────────────────────────────────────────
# セッション
# ─────────────────────────────────────────

class CurrentUser(BaseModel):
    """署名付きトークンから復元したログインユーザー"""
    id: int
    email: str
    role: str


# ─────────────────────────────────────────
# 商品カタログ・レンタル期間
# ─────────────────────────────────────────

class RentalPeriodResponse(BaseModel):
    id: int
    name: str
    duration: int
    unit: str
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RentalPeriodUsage(RentalPeriodResponse):
    """スーパー管理者向け：その期間で設定されている料金の件数付き"""
    price_count: int = 0


class RentalPeriodPatch(BaseModel):
    """レンタル期間の部分更新。指定した項目だけを書き換える。"""
    id: int
    name: Optional[str] = None
    duration: Optional[int] = Field(None, ge=1)
    unit: Optional[PeriodUnit] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.strip():
            raise ValueError("期間名を入力してください")
        return v.strip()


class RentalPeriodsPatchRequest(BaseModel):
    periods: list[RentalPeriodPatch] = Field(..., min_length=1)


class RentalPriceInput(BaseModel):
    """期間ごとの料金。0 は「この期間では貸さない」扱いで保存しない。"""
    period_id: int
    price: float = Field(..., ge=0)


class VariantInput(BaseModel):
    """id があれば既存バリアントの更新、なければ新規作成"""
    id: Optional[int] = None
    sku: Optional[str] = None
    quantity: int = Field(0, ge=0)
    rental_prices: list[RentalPriceInput] = []


class ProductInput(BaseModel):
    """商品の登録・更新リクエスト（ベンダー用）"""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    is_published: bool = True
    variants: list[VariantInput] = Field(..., min_length=1)


class RentalPriceResponse(BaseModel):
    period_id: int
    period_name: str
    unit: str
    duration: int
    price: float


class VariantResponse(BaseModel):
    id: int
    sku: Optional[str]
    quantity: int
    rental_prices: list[RentalPriceResponse]


class ProductResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    is_published: bool
    created_at: Optional[datetime]
    variants: list[VariantResponse]


# ─────────────────────────────────────────
# カート
# ─────────────────────────────────────────

class AddToCartRequest(BaseModel):
    """カート追加リクエスト"""
    variant_id: int
    quantity: int = Field(1, ge=1)
    rental_start: datetime
    rental_end: datetime

    @field_validator("rental_start", "rental_end")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return to_utc_naive(v)


class CartQuantityUpdate(BaseModel):
    """数量変更リクエスト（0以下は削除扱い）"""
    quantity: int


class CartItemResponse(BaseModel):
    id: int
    variant_id: int
    quantity: int
    rental_start: datetime
    rental_end: datetime
    price: float              # 追加時点の単価（固定）
    product_name: str
    variant_sku: Optional[str] = None
    vendor_id: int
    vendor_name: str
    vendor_company_name: Optional[str] = None


class CartVendorGroup(BaseModel):
    """ベンダー単位にまとめたカート"""
    vendor_id: int
    vendor_name: str
    vendor_company_name: Optional[str] = None
    items: list[CartItemResponse]
    subtotal: float


# ─────────────────────────────────────────
# 配送料
# ─────────────────────────────────────────

class DeliveryChargeRequest(BaseModel):
    delivery_address_id: int


class VendorDeliveryCharge(BaseModel):
    vendor_id: int
    vendor_name: str
    charge: float
    distance_km: Optional[float] = None


class DeliveryChargeResult(BaseModel):
    per_vendor: list[VendorDeliveryCharge] = Field(default_factory=list)
    total_delivery_charge: float = 0


# ─────────────────────────────────────────
# 見積
# ─────────────────────────────────────────

class SubmitQuotationRequest(BaseModel):
    """見積依頼リクエスト。配送料はベンダーIDごとに事前計算した値を渡す。"""
    fulfillment_type: FulfillmentType = "DELIVERY"
    delivery_address_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    delivery_charge_per_vendor: dict[int, float] = Field(default_factory=dict)


class SubmissionResult(BaseModel):
    quotation_ids: list[int]
    vendor_names: list[str]


class ApplyCouponRequest(BaseModel):
    code: str


class QuotationResponse(BaseModel):
    id: int
    customer_id: int
    vendor_id: int
    status: str
    fulfillment_type: str
    delivery_charge: float
    coupon_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class QuotationListItem(BaseModel):
    """顧客向け見積一覧の1行"""
    id: int
    status: str
    vendor_name: str
    vendor_company_name: Optional[str] = None
    item_count: int
    delivery_charge: float
    fulfillment_type: str
    created_at: datetime
    rental_start: Optional[datetime] = None
    rental_end: Optional[datetime] = None
    total_amount: float


# ─────────────────────────────────────────
# 受注・決済
# ─────────────────────────────────────────

class PaymentDetails(BaseModel):
    """決済プロバイダから受け取った支払い情報（金額は通貨単位）"""
    amount_paid: float
    payment_intent_id: str
    checkout_session_id: Optional[str] = None


class OrderResponse(BaseModel):
    id: int
    quotation_id: int
    customer_id: int
    status: str
    fulfillment_type: str
    delivery_charge: float
    discount_amount: float
    coupon_code: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderListItem(BaseModel):
    """顧客向け受注一覧の1行"""
    id: int
    quotation_id: int
    status: str
    vendor_name: str
    vendor_company_name: Optional[str] = None
    item_count: int
    delivery_charge: float
    fulfillment_type: str
    created_at: datetime
    rental_start: Optional[datetime] = None
    rental_end: Optional[datetime] = None
    total_amount: float


# ─────────────────────────────────────────
# ベンダー設定・管理者
# ─────────────────────────────────────────

class DeliveryConfigUpdate(BaseModel):
    """配送設定の更新リクエスト（ベンダー用）"""
    is_delivery_enabled: bool
    charge_type: DeliveryChargeType
    flat_charge: Optional[float] = Field(None, ge=0)
    rate_per_km: Optional[float] = Field(None, ge=0)
    free_above_amount: Optional[float] = Field(None, ge=0)
    max_delivery_km: Optional[float] = Field(None, gt=0)


class DeliveryConfigResponse(DeliveryConfigUpdate):
    id: int
    vendor_id: int

    class Config:
        from_attributes = True


class CouponCreate(BaseModel):
    """クーポン作成リクエスト（スーパー管理者用）"""
    code: str = Field(..., min_length=1)
    type: CouponType
    value: float = Field(..., gt=0)
    max_discount: Optional[float] = Field(None, ge=0)
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_naive(v) if v is not None else v


class CouponResponse(CouponCreate):
    id: int
    created_at: datetime

    class Config:
        from_attributes = True


class InvoiceRow(BaseModel):
    """ベンダー向け請求書一覧の1行"""
    id: int
    order_id: int
    rental_amount: float
    security_deposit: float
    delivery_charge: float
    total_amount: float
    paid_amount: float
    status: str
    created_at: datetime
    customer_name: str
    customer_email: str


class InvoicePage(BaseModel):
    data: list[InvoiceRow]
    total: int
    page: int
    limit: int
