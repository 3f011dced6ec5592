"""
FastAPI メインアプリケーション（レンタルマーケットプレイス）。

顧客向けのカート・見積・受注、ベンダー向けの見積操作・配送設定・レポート、
スーパー管理者向けのクーポン・ベンダーブロック、Stripe Webhook を提供する。
業務エラー（errors.MarketplaceError）は1つの例外ハンドラで JSON に変換する。
"""

import logging
from datetime import date
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from starlette.concurrency import run_in_threadpool

import catalog
import checkout
import mailer
import payments
import reports
import views
from auth import require_customer, require_super_admin, require_vendor
from blocklist import BlockedVendorRepository
from constants import CORS_ORIGINS
from database import get_db, init_tables
from errors import MarketplaceError, NotFound
from filters import build_coupon_filter, build_invoice_filter, coupon_criteria, parse_date
from geocoding import OpenRouteServiceClient
from models import Coupon, Product, Quotation, User, VendorDeliveryConfig
from pricing import load_rates
from schemas import (
    AddToCartRequest, ApplyCouponRequest, CartQuantityUpdate, CouponCreate, CouponResponse,
    CurrentUser, DeliveryChargeRequest, DeliveryChargeResult, DeliveryConfigResponse,
    DeliveryConfigUpdate, InvoicePage, OrderListItem, OrderResponse, OrderStatusUpdate, ProductInput,
    ProductResponse, QuotationListItem, QuotationResponse, RentalPeriodResponse, RentalPeriodUsage,
    RentalPeriodsPatchRequest, SubmissionResult, SubmitQuotationRequest,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ─────────────────────────────────────────
# FastAPI アプリ初期化
# ─────────────────────────────────────────
app = FastAPI(
    title="レンタルマーケットプレイス API",
    description="カート・見積・決済・受注を扱うレンタルマーケットプレイスのバックエンドAPI",
    version="1.0.0",
)

# CORS 設定（フロントエンドからアクセス許可）
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    init_tables()


@app.exception_handler(MarketplaceError)
def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


def get_geocoder() -> OpenRouteServiceClient:
    """配送料計算で使うジオコーダー（テストでは差し替える）"""
    return OpenRouteServiceClient()


# ─────────────────────────────────────────
# ヘルスチェック
# ─────────────────────────────────────────

@app.get("/", tags=["ヘルスチェック"])
def root():
    """APIサーバー起動確認"""
    return {"status": "ok", "message": "レンタルマーケットプレイスAPI は正常に動作しています"}


# ─────────────────────────────────────────
# 商品一覧（公開）
# ─────────────────────────────────────────

@app.get("/products", tags=["商品"])
def list_products(db: Session = Depends(get_db)):
    """
    公開中の商品一覧。
    - ブロック中のベンダーの商品は除外する
    - バリアントごとに設定済みのレンタル料金を返す
    """
    def build():
        blocked = set(BlockedVendorRepository(db).blocked_ids())
        products = db.scalars(
            select(Product)
            .options(selectinload(Product.variants), selectinload(Product.vendor))
            .where(Product.is_published.is_(True))
            .order_by(Product.id)
        ).all()
        result = []
        for p in products:
            if p.vendor_id in blocked:
                continue
            result.append({
                "id": p.id,
                "name": p.name,
                "description": p.description,
                "vendor_id": p.vendor_id,
                "vendor_name": p.vendor.display_name,
                "variants": [
                    {
                        "id": v.id,
                        "sku": v.sku,
                        "quantity": v.quantity,
                        "rates": [r._asdict() for r in load_rates(db, v.id)],
                    }
                    for v in p.variants
                ],
            })
        return result

    return views.cached("/products", build)


# ─────────────────────────────────────────
# カートAPI（顧客）
# ─────────────────────────────────────────

@app.get("/cart", tags=["カート"])
def read_cart(user: CurrentUser = Depends(require_customer), db: Session = Depends(get_db)):
    """ベンダーごとにまとめたカート"""
    return views.cached(
        f"/cart:{user.id}",
        lambda: [g.model_dump() for g in checkout.get_cart(db, user.id)],
    )


@app.get("/cart/count", tags=["カート"])
def read_cart_count(user: CurrentUser = Depends(require_customer), db: Session = Depends(get_db)):
    return {"count": checkout.get_cart_count(db, user.id)}


@app.post("/cart/items", status_code=status.HTTP_201_CREATED, tags=["カート"])
def add_cart_item(
    payload: AddToCartRequest,
    user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
):
    """
    カートに追加する。
    同じバリアント・同じ期間の明細が既にあれば数量を加算する。
    """
    item = checkout.add_to_cart(
        db, user.id, payload.variant_id, payload.quantity, payload.rental_start, payload.rental_end
    )
    return {
        "success": True,
        "item": {
            "id": item.id,
            "variant_id": item.variant_id,
            "quantity": item.quantity,
            "rental_start": item.rental_start,
            "rental_end": item.rental_end,
            "price": item.price,
        },
    }


@app.patch("/cart/items/{cart_item_id}", tags=["カート"])
def update_cart_item(
    cart_item_id: int,
    payload: CartQuantityUpdate,
    user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
):
    """数量変更（1未満は削除）"""
    item = checkout.update_cart_item_quantity(db, user.id, cart_item_id, payload.quantity)
    if item is None:
        return {"success": True, "removed": True}
    return {"success": True, "removed": False, "quantity": item.quantity}


@app.delete("/cart/items/{cart_item_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["カート"])
def delete_cart_item(
    cart_item_id: int,
    user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
):
    checkout.remove_cart_item(db, user.id, cart_item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ─────────────────────────────────────────
# チェックアウトAPI（顧客）
# ─────────────────────────────────────────

@app.post("/checkout/delivery-charges", response_model=DeliveryChargeResult, tags=["チェックアウト"])
def calculate_delivery_charges(
    payload: DeliveryChargeRequest,
    user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    geocoder=Depends(get_geocoder),
):
    """カートのベンダーごとの配送料（距離が取れない場合も計算可能な範囲で返す）"""
    return checkout.compute_delivery_charges(db, user.id, payload.delivery_address_id, geocoder)


@app.post("/quotations", response_model=SubmissionResult, status_code=status.HTTP_201_CREATED, tags=["見積"])
def submit_quotation(
    payload: SubmitQuotationRequest,
    user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
):
    """カートをベンダーごとの見積に分割して提出する"""
    return checkout.submit_quotation(
        db,
        user.id,
        fulfillment_type=payload.fulfillment_type,
        delivery_address_id=payload.delivery_address_id,
        billing_address_id=payload.billing_address_id,
        delivery_charge_per_vendor=payload.delivery_charge_per_vendor,
    )


@app.get("/quotations", response_model=list[QuotationListItem], tags=["見積"])
def list_quotations(user: CurrentUser = Depends(require_customer), db: Session = Depends(get_db)):
    return checkout.list_customer_quotations(db, user.id)


@app.post("/quotations/{quotation_id}/coupon", response_model=QuotationResponse, tags=["見積"])
def apply_coupon(
    quotation_id: int,
    payload: ApplyCouponRequest,
    user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
):
    return checkout.apply_coupon(db, user.id, quotation_id, payload.code)


@app.get("/orders", response_model=list[OrderListItem], tags=["受注"])
def list_orders(user: CurrentUser = Depends(require_customer), db: Session = Depends(get_db)):
    return checkout.list_customer_orders(db, user.id)


# ─────────────────────────────────────────
# Stripe Webhook
# ─────────────────────────────────────────

def _process_webhook(db: Session, payload: bytes, signature: Optional[str]) -> Optional[tuple]:
    """
    署名検証から受注作成までの同期処理。DB を使うためワーカースレッドで実行する。

    Returns:
        受注を作成した場合は通知メールの引数（宛先, ベンダー名, 受注ID, 顧客名）、それ以外は None
    """
    event = payments.parse_webhook_event(payload, signature)
    order = payments.handle_stripe_event(db, event)
    if order is None:
        return None
    quotation = db.scalars(
        select(Quotation)
        .options(selectinload(Quotation.vendor), selectinload(Quotation.customer))
        .where(Quotation.id == order.quotation_id)
    ).one()
    return quotation.vendor.email, quotation.vendor.display_name, order.id, quotation.customer.name


@app.post("/stripe/webhook", tags=["決済"])
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    決済完了通知。
    署名検証に失敗した場合は 400。処理済み・対象外の通知も 200 で受信済みを返す。
    生のボディだけをイベントループで読み、DB 処理はスレッドプールに渡す。
    """
    payload = await request.body()
    mail_args = await run_in_threadpool(_process_webhook, db, payload, request.headers.get("stripe-signature"))
    if mail_args is not None:
        background_tasks.add_task(mailer.notify_order_placed, *mail_args)
    return {"received": True}


# ─────────────────────────────────────────
# ベンダーAPI
# ─────────────────────────────────────────

@app.get("/vendor/rental-periods", response_model=list[RentalPeriodResponse], tags=["ベンダー"])
def vendor_rental_periods(user: CurrentUser = Depends(require_vendor), db: Session = Depends(get_db)):
    """商品登録で選べる有効なレンタル期間"""
    return catalog.list_active_periods(db)


@app.get("/vendor/products", response_model=list[ProductResponse], tags=["ベンダー"])
def vendor_products(user: CurrentUser = Depends(require_vendor), db: Session = Depends(get_db)):
    return catalog.list_vendor_products(db, user.id)


@app.post("/vendor/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED, tags=["ベンダー"])
def create_vendor_product(
    payload: ProductInput,
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    """商品登録（バリアントと期間別料金を含む）"""
    return catalog.create_product(db, user.id, payload)


@app.put("/vendor/products/{product_id}", response_model=ProductResponse, tags=["ベンダー"])
def update_vendor_product(
    product_id: int,
    payload: ProductInput,
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    """商品更新。送られなかったバリアントは削除する（使用中なら 409）。"""
    return catalog.update_product(db, user.id, product_id, payload)


@app.post("/vendor/quotations/{quotation_id}/{action}", response_model=QuotationResponse, tags=["ベンダー"])
def vendor_quotation_action(
    quotation_id: int,
    action: str,
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    """見積操作（send / confirm / cancel）"""
    return checkout.quotation_action(db, user.id, quotation_id, action)


@app.patch("/vendor/orders/{order_id}/status", response_model=OrderResponse, tags=["ベンダー"])
def vendor_update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    """受注ステータス変更（変更内容は顧客にメール通知）"""
    order = checkout.update_order_status(db, user.id, order_id, payload.status)
    customer = db.get(User, order.customer_id)
    background_tasks.add_task(mailer.notify_order_status, customer.email, customer.name, order.id, order.status)
    return order


@app.get("/vendor/delivery-config", response_model=Optional[DeliveryConfigResponse], tags=["ベンダー"])
def read_delivery_config(user: CurrentUser = Depends(require_vendor), db: Session = Depends(get_db)):
    """配送設定（未設定なら null）"""
    return db.scalars(select(VendorDeliveryConfig).where(VendorDeliveryConfig.vendor_id == user.id)).first()


@app.put("/vendor/delivery-config", response_model=DeliveryConfigResponse, tags=["ベンダー"])
def save_delivery_config(
    payload: DeliveryConfigUpdate,
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    """配送設定を保存する（なければ作成）"""
    config = db.scalars(select(VendorDeliveryConfig).where(VendorDeliveryConfig.vendor_id == user.id)).first()
    if config is None:
        config = VendorDeliveryConfig(vendor_id=user.id)
        db.add(config)
    for field, value in payload.model_dump().items():
        setattr(config, field, value)
    db.commit()
    db.refresh(config)
    logger.info("Vendor %s updated delivery config (%s)", user.id, config.charge_type)
    return config


@app.get("/vendor/invoices", response_model=InvoicePage, tags=["ベンダー"])
def list_vendor_invoices(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    f = build_invoice_filter(user.id, page, limit, status, search, date_from, date_to)
    return reports.list_vendor_invoices(db, f)


@app.get("/vendor/reports", tags=["ベンダー"])
def vendor_report(
    type: str = "revenue",
    format: str = "json",
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    user: CurrentUser = Depends(require_vendor),
    db: Session = Depends(get_db),
):
    """
    売上（revenue）・商品別（product）レポート。
    期間未指定は当月1日〜今日。format=csv の場合は CSV ファイルとして返す。
    """
    start, end = reports.default_range(parse_date(date_from), parse_date(date_to))
    if type == "revenue":
        summary, df = reports.revenue_report(db, user.id, start, end)
    elif type == "product":
        df = reports.product_report(db, user.id, start, end)
        summary = {"total_products": len(df), "from": start.isoformat(), "to": end.isoformat()}
    else:
        raise MarketplaceError(f"不明なレポート種別です: {type}")

    if format == "csv":
        filename = f"{type}-report-{date.today().isoformat()}.csv"
        return Response(
            content=reports.to_csv(df),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return {"summary": summary, "rows": df.to_dict(orient="records")}


@app.get("/vendor/dashboard", tags=["ベンダー"])
def vendor_dashboard(user: CurrentUser = Depends(require_vendor), db: Session = Depends(get_db)):
    return reports.vendor_dashboard(db, user.id)


# ─────────────────────────────────────────
# スーパー管理者API
# ─────────────────────────────────────────

@app.get("/super-admin/coupons", response_model=list[CouponResponse], tags=["スーパー管理者"])
def list_coupons(
    is_active: Optional[str] = None,
    search: Optional[str] = None,
    user: CurrentUser = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    criteria = coupon_criteria(build_coupon_filter(is_active, search))
    return db.scalars(select(Coupon).where(*criteria).order_by(Coupon.created_at.desc(), Coupon.id.desc())).all()


@app.post("/super-admin/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED, tags=["スーパー管理者"])
def create_coupon(
    payload: CouponCreate,
    user: CurrentUser = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    """クーポン作成（コードは大文字で保存する）"""
    code = payload.code.strip().upper()
    if db.scalar(select(Coupon.id).where(Coupon.code == code)) is not None:
        raise MarketplaceError("同じコードのクーポンが既に存在します")
    coupon = Coupon(**payload.model_dump(exclude={"code"}), code=code)
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    logger.info("Coupon %s created by %s", code, user.id)
    return coupon


@app.get("/super-admin/rental-periods", response_model=list[RentalPeriodUsage], tags=["スーパー管理者"])
def list_rental_periods(user: CurrentUser = Depends(require_super_admin), db: Session = Depends(get_db)):
    """停止中を含む全レンタル期間（料金設定数付き）"""
    return catalog.list_rental_periods(db)


@app.patch("/super-admin/rental-periods", response_model=list[RentalPeriodUsage], tags=["スーパー管理者"])
def patch_rental_periods(
    payload: RentalPeriodsPatchRequest,
    user: CurrentUser = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    """レンタル期間の一括更新。存在しない id が1件でもあれば何も変更しない。"""
    return catalog.update_rental_periods(db, payload.periods)


def _get_vendor(db: Session, vendor_id: int) -> User:
    vendor = db.get(User, vendor_id)
    if vendor is None or vendor.role != "VENDOR":
        raise NotFound("ベンダーが見つかりません")
    return vendor


@app.post("/super-admin/vendors/{vendor_id}/block", tags=["スーパー管理者"])
def block_vendor(
    vendor_id: int,
    user: CurrentUser = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    _get_vendor(db, vendor_id)
    BlockedVendorRepository(db).block(vendor_id)
    views.invalidate("/products")
    return {"success": True, "vendor_id": vendor_id, "blocked": True}


@app.delete("/super-admin/vendors/{vendor_id}/block", tags=["スーパー管理者"])
def unblock_vendor(
    vendor_id: int,
    user: CurrentUser = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    _get_vendor(db, vendor_id)
    BlockedVendorRepository(db).unblock(vendor_id)
    views.invalidate("/products")
    return {"success": True, "vendor_id": vendor_id, "blocked": False}


@app.get("/super-admin/vendors/blocked", tags=["スーパー管理者"])
def list_blocked_vendors(user: CurrentUser = Depends(require_super_admin), db: Session = Depends(get_db)):
    return {"vendor_ids": BlockedVendorRepository(db).blocked_ids()}
