"""
商品カタログとレンタル期間の管理。

【ベンダー】
  自社商品の登録・更新。商品はバリアント（SKU・在庫数）と、
  バリアント × レンタル期間 の料金を持つ。料金 0 の期間は保存しない。

【スーパー管理者】
  レンタル期間（課金単位）の名称・長さ・単位・有効/無効を一括で更新する。
  停止した期間は新しい商品には設定できない。
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

import views
from database import transaction
from errors import InvalidRentalPeriod, NotFound, VariantInUse
from models import (
    CartItem, OrderItem, Product, ProductVariant, QuotationItem, RentalPeriod, RentalPrice,
)
from schemas import (
    ProductInput, ProductResponse, RentalPeriodPatch, RentalPeriodUsage, RentalPriceResponse,
    VariantInput, VariantResponse,
)

logger = logging.getLogger(__name__)

_PRODUCT_LOAD = (
    selectinload(Product.variants)
    .selectinload(ProductVariant.rental_prices)
    .selectinload(RentalPrice.period)
)


# ─────────────────────────────────────────
# レンタル期間
# ─────────────────────────────────────────

def list_active_periods(db: Session) -> list[RentalPeriod]:
    """商品登録で選べる有効な期間（作成順）"""
    return list(db.scalars(
        select(RentalPeriod)
        .where(RentalPeriod.is_active.is_(True))
        .order_by(RentalPeriod.created_at, RentalPeriod.id)
    ))


def list_rental_periods(db: Session) -> list[RentalPeriodUsage]:
    """停止中を含む全期間を新しい順に、設定済み料金の件数付きで返す"""
    counts = (
        select(RentalPrice.period_id, func.count(RentalPrice.id).label("n"))
        .group_by(RentalPrice.period_id)
        .subquery()
    )
    rows = db.execute(
        select(RentalPeriod, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.period_id == RentalPeriod.id)
        .order_by(RentalPeriod.created_at.desc(), RentalPeriod.id.desc())
    ).all()
    return [RentalPeriodUsage.model_validate(p).model_copy(update={"price_count": n}) for p, n in rows]


def update_rental_periods(db: Session, patches: list[RentalPeriodPatch]) -> list[RentalPeriodUsage]:
    """
    複数の期間をまとめて更新する。1件でも存在しなければ何も更新しない。
    指定されなかった項目（None）はそのまま残す。
    """
    with transaction(db):
        for patch in patches:
            period = db.get(RentalPeriod, patch.id)
            if period is None:
                raise NotFound(f"レンタル期間 {patch.id} が見つかりません")
            for field, value in patch.model_dump(exclude={"id"}, exclude_none=True).items():
                setattr(period, field, value)

    # 公開一覧は期間の単位・長さを含む
    views.invalidate("/products")
    logger.info("Rental periods updated: %s", [p.id for p in patches])
    return list_rental_periods(db)


def _check_periods(db: Session, variants: list[VariantInput]) -> None:
    wanted = sorted({p.period_id for v in variants for p in v.rental_prices})
    if not wanted:
        return
    active = set(db.scalars(
        select(RentalPeriod.id).where(RentalPeriod.id.in_(wanted), RentalPeriod.is_active.is_(True))
    ))
    missing = [i for i in wanted if i not in active]
    if missing:
        raise InvalidRentalPeriod(f"無効または停止中のレンタル期間です: {', '.join(map(str, missing))}")


# ─────────────────────────────────────────
# 商品（ベンダー）
# ─────────────────────────────────────────

def _prices(variant: VariantInput) -> list[RentalPrice]:
    # 同じ期間が複数回あれば後勝ち
    by_period = {p.period_id: p.price for p in variant.rental_prices}
    return [RentalPrice(period_id=pid, price=price) for pid, price in by_period.items() if price > 0]


def product_response(product: Product) -> ProductResponse:
    return ProductResponse(
        id=product.id,
        name=product.name,
        description=product.description,
        is_published=product.is_published,
        created_at=product.created_at,
        variants=[
            VariantResponse(
                id=v.id,
                sku=v.sku,
                quantity=v.quantity,
                rental_prices=[
                    RentalPriceResponse(
                        period_id=r.period_id,
                        period_name=r.period.name,
                        unit=r.period.unit,
                        duration=r.period.duration,
                        price=r.price,
                    )
                    for r in sorted(v.rental_prices, key=lambda r: r.period_id)
                ],
            )
            for v in sorted(product.variants, key=lambda v: v.id)
        ],
    )


def get_vendor_product(db: Session, vendor_id: int, product_id: int) -> Product:
    """自社の商品を取得する。他社の商品は存在しないものとして扱う。"""
    product = db.scalars(
        select(Product)
        .options(_PRODUCT_LOAD)
        .where(Product.id == product_id, Product.vendor_id == vendor_id)
        .execution_options(populate_existing=True)
    ).first()
    if product is None:
        raise NotFound("商品が見つかりません")
    return product


def list_vendor_products(db: Session, vendor_id: int) -> list[ProductResponse]:
    products = db.scalars(
        select(Product)
        .options(_PRODUCT_LOAD)
        .where(Product.vendor_id == vendor_id)
        .order_by(Product.created_at.desc(), Product.id.desc())
    ).all()
    return [product_response(p) for p in products]


def create_product(db: Session, vendor_id: int, payload: ProductInput) -> ProductResponse:
    """商品をバリアント・料金ごと登録する（バリアントの id 指定は無視する）"""
    _check_periods(db, payload.variants)

    product = Product(
        vendor_id=vendor_id,
        name=payload.name.strip(),
        description=payload.description,
        is_published=payload.is_published,
    )
    product.variants = [
        ProductVariant(sku=v.sku or None, quantity=v.quantity, rental_prices=_prices(v))
        for v in payload.variants
    ]
    with transaction(db):
        db.add(product)

    views.invalidate("/products")
    logger.info("Vendor %s created product %s with %d variant(s)", vendor_id, product.id, len(payload.variants))
    return product_response(get_vendor_product(db, vendor_id, product.id))


def _variants_in_use(db: Session, variant_ids: list[int]) -> list[int]:
    used = set()
    for model in (CartItem, QuotationItem, OrderItem):
        used.update(db.scalars(select(model.variant_id).where(model.variant_id.in_(variant_ids)).distinct()))
    return sorted(used)


def update_product(db: Session, vendor_id: int, product_id: int, payload: ProductInput) -> ProductResponse:
    """
    商品を更新する。

    - id 付きのバリアントは更新し、料金は送られた内容で置き換える
    - id なしのバリアントは新規作成する
    - 送られなかった既存バリアントは削除する。ただしカート・見積・受注で
      参照されていれば VariantInUse（何も変更しない）
    """
    product = get_vendor_product(db, vendor_id, product_id)
    _check_periods(db, payload.variants)

    existing = {v.id: v for v in product.variants}
    unknown = [v.id for v in payload.variants if v.id is not None and v.id not in existing]
    if unknown:
        raise NotFound(f"この商品のバリアントではありません: {', '.join(map(str, unknown))}")
    sent = {v.id for v in payload.variants if v.id is not None}
    removed = [vid for vid in existing if vid not in sent]
    in_use = _variants_in_use(db, removed) if removed else []
    if in_use:
        raise VariantInUse(f"使用中のバリアントは削除できません: {', '.join(map(str, in_use))}")

    with transaction(db):
        product.name = payload.name.strip()
        product.description = payload.description
        product.is_published = payload.is_published
        for v in payload.variants:
            if v.id is None:
                variant = ProductVariant(product=product)
                db.add(variant)
            else:
                variant = existing[v.id]
            variant.sku = v.sku or None
            variant.quantity = v.quantity
            variant.rental_prices = _prices(v)
        for vid in removed:
            db.delete(existing[vid])

    views.invalidate("/products")
    logger.info("Vendor %s updated product %s (removed variants: %s)", vendor_id, product_id, removed)
    return product_response(get_vendor_product(db, vendor_id, product_id))
