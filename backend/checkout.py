"""
カート → 見積 → 決済 → 受注 のワークフロー。

【見積ステータス】
  DRAFT → SENT → CONFIRMED（終端）
  DRAFT / SENT → CANCELLED（終端）
  CONFIRMED への遷移時に受注（RentalOrder）を1件だけ作成する。

【同時実行】
  - カート追加は (cart, variant, 開始, 終了) の一意制約に対する INSERT ... ON CONFLICT DO UPDATE で数量を加算する
  - 受注作成は「ステータス確認 → 既存受注確認 → SENT→CONFIRMED の条件付き更新 → 受注INSERT」を
    1トランザクションで行い、rental_orders.quotation_id の一意制約を最後の砦とする
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

import views
from blocklist import BlockedVendorRepository
from constants import ORDER_TRANSITIONS
from database import transaction
from delivery import VendorShipment, compute_delivery_charges as calculate_delivery_charges
from errors import (
    EmptyCart, InvalidCoupon, InvalidDateRange, InvalidQuantity, InvalidTransition,
    NotFound, UnpriceableVariant, VendorBlocked,
)
from models import (
    ActivityLog, Address, Cart, CartItem, Coupon, Invoice, OrderItem, Payment, Product,
    ProductVariant, Quotation, QuotationItem, RentalOrder, VendorDeliveryConfig, utcnow,
)
from pricing import compute_quotation_totals, compute_rental_price, coupon_is_applicable
from schemas import (
    CartItemResponse, CartVendorGroup, DeliveryChargeResult, OrderListItem, PaymentDetails,
    QuotationListItem, SubmissionResult,
)

logger = logging.getLogger(__name__)

_CART_ITEM_LOAD = (
    selectinload(Cart.items)
    .selectinload(CartItem.variant)
    .selectinload(ProductVariant.product)
    .selectinload(Product.vendor)
)


# ─────────────────────────────────────────
# 内部ユーティリティ
# ─────────────────────────────────────────

def _dialect_insert(db: Session):
    """接続先DBに対応した ON CONFLICT 対応の insert() を返す"""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Upsert is not supported for dialect {name!r}")


def _ensure_cart_id(db: Session, customer_id: int) -> int:
    """顧客のカートIDを返す。なければ作成する（同時作成でも1件に収束する）。"""
    insert = _dialect_insert(db)
    db.execute(
        insert(Cart)
        .values(customer_id=customer_id, created_at=utcnow())
        .on_conflict_do_nothing(index_elements=["customer_id"])
    )
    return db.scalar(select(Cart.id).where(Cart.customer_id == customer_id))


def _load_cart(db: Session, customer_id: int) -> Optional[Cart]:
    return db.scalars(
        select(Cart).options(_CART_ITEM_LOAD).where(Cart.customer_id == customer_id)
    ).first()


def _group_by_vendor(items: list[CartItem]) -> list[CartVendorGroup]:
    """カート明細を商品の所有ベンダーごとにまとめる（ベンダーはカート内の出現順）"""
    groups: dict[int, CartVendorGroup] = {}
    for item in items:
        product = item.variant.product
        vendor = product.vendor
        row = CartItemResponse(
            id=item.id,
            variant_id=item.variant_id,
            quantity=item.quantity,
            rental_start=item.rental_start,
            rental_end=item.rental_end,
            price=item.price,
            product_name=product.name,
            variant_sku=item.variant.sku,
            vendor_id=vendor.id,
            vendor_name=vendor.name,
            vendor_company_name=vendor.company_name,
        )
        group = groups.get(vendor.id)
        if group is None:
            group = CartVendorGroup(
                vendor_id=vendor.id,
                vendor_name=vendor.name,
                vendor_company_name=vendor.company_name,
                items=[],
                subtotal=0,
            )
            groups[vendor.id] = group
        group.items.append(row)
        group.subtotal += item.price * item.quantity
    return list(groups.values())


def _owned_address(db: Session, customer_id: int, address_id: int) -> Address:
    address = db.scalars(
        select(Address).where(Address.id == address_id, Address.user_id == customer_id)
    ).first()
    if address is None:
        raise NotFound("住所が見つかりません")
    return address


def _pickup_address(db: Session, vendor_id: int) -> Optional[Address]:
    return db.scalars(
        select(Address)
        .where(Address.user_id == vendor_id, Address.type == "PICKUP")
        .order_by(Address.is_default.desc(), Address.id)
        .limit(1)
    ).first()


def _interval_bounds(items) -> tuple[Optional[datetime], Optional[datetime]]:
    if not items:
        return None, None
    return min(i.rental_start for i in items), max(i.rental_end for i in items)


def _log_activity(db: Session, user_id: int, action: str, entity: str, entity_id: int) -> None:
    db.add(ActivityLog(user_id=user_id, action=action, entity=entity, entity_id=entity_id))


# ─────────────────────────────────────────
# カート
# ─────────────────────────────────────────

def add_to_cart(
    db: Session,
    customer_id: int,
    variant_id: int,
    quantity: int,
    rental_start: datetime,
    rental_end: datetime,
) -> CartItem:
    """
    カートにレンタル明細を追加する。

    - 終了日時 ≦ 開始日時 は InvalidDateRange
    - 料金が 0 以下（適用できる料金なし）は UnpriceableVariant
    - 同じ (バリアント, 開始, 終了) が既にあれば数量を加算し、単価は追加時点のまま変えない

    Returns:
        追加（または数量加算）後のカート明細
    """
    if rental_end <= rental_start:
        raise InvalidDateRange()
    if quantity < 1:
        raise InvalidQuantity()

    variant = db.get(ProductVariant, variant_id)
    if variant is None:
        raise NotFound("商品が見つかりません")
    if BlockedVendorRepository(db).is_blocked(variant.product.vendor_id):
        raise VendorBlocked()

    price = compute_rental_price(db, variant_id, rental_start, rental_end)
    if price <= 0:
        raise UnpriceableVariant()

    insert = _dialect_insert(db)
    with transaction(db):
        cart_id = _ensure_cart_id(db, customer_id)
        stmt = insert(CartItem).values(
            cart_id=cart_id,
            variant_id=variant_id,
            quantity=quantity,
            rental_start=rental_start,
            rental_end=rental_end,
            price=price,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["cart_id", "variant_id", "rental_start", "rental_end"],
            set_={"quantity": CartItem.quantity + stmt.excluded.quantity},
        )
        db.execute(stmt)

    views.invalidate("/cart", "/products")

    item = db.scalars(
        select(CartItem).where(
            CartItem.cart_id == cart_id,
            CartItem.variant_id == variant_id,
            CartItem.rental_start == rental_start,
            CartItem.rental_end == rental_end,
        )
    ).one()
    return item


def get_cart(db: Session, customer_id: int) -> list[CartVendorGroup]:
    """ベンダー単位にまとめたカートを返す（空なら空リスト）"""
    cart = _load_cart(db, customer_id)
    if cart is None or not cart.items:
        return []
    return _group_by_vendor(cart.items)


def get_cart_count(db: Session, customer_id: int) -> int:
    """カート内の数量合計"""
    cart = _load_cart(db, customer_id)
    if cart is None:
        return 0
    return sum(i.quantity for i in cart.items)


def _owned_cart_item(db: Session, customer_id: int, cart_item_id: int) -> CartItem:
    item = db.scalars(
        select(CartItem)
        .join(Cart, CartItem.cart_id == Cart.id)
        .where(CartItem.id == cart_item_id, Cart.customer_id == customer_id)
    ).first()
    if item is None:
        raise NotFound("カート明細が見つかりません")
    return item


def remove_cart_item(db: Session, customer_id: int, cart_item_id: int) -> None:
    item = _owned_cart_item(db, customer_id, cart_item_id)
    db.delete(item)
    db.commit()
    views.invalidate("/cart")


def update_cart_item_quantity(db: Session, customer_id: int, cart_item_id: int, quantity: int) -> Optional[CartItem]:
    """数量を変更する。1未満は削除扱いで None を返す。"""
    if quantity < 1:
        remove_cart_item(db, customer_id, cart_item_id)
        return None
    item = _owned_cart_item(db, customer_id, cart_item_id)
    item.quantity = quantity
    db.commit()
    views.invalidate("/cart")
    return item


# ─────────────────────────────────────────
# 配送料
# ─────────────────────────────────────────

def compute_delivery_charges(db: Session, customer_id: int, delivery_address_id: int, geocoder) -> DeliveryChargeResult:
    """顧客のカートと配送先住所からベンダーごとの配送料を計算する"""
    destination = _owned_address(db, customer_id, delivery_address_id)

    groups = get_cart(db, customer_id)
    if not groups:
        return DeliveryChargeResult()

    shipments = []
    for group in groups:
        config = db.scalars(
            select(VendorDeliveryConfig).where(VendorDeliveryConfig.vendor_id == group.vendor_id)
        ).first()
        shipments.append(VendorShipment(
            vendor_id=group.vendor_id,
            vendor_name=group.vendor_company_name or group.vendor_name,
            subtotal=group.subtotal,
            config=config,
            pickup_address=_pickup_address(db, group.vendor_id),
        ))
    return calculate_delivery_charges(shipments, destination, geocoder)


# ─────────────────────────────────────────
# 見積
# ─────────────────────────────────────────

def submit_quotation(
    db: Session,
    customer_id: int,
    fulfillment_type: str = "DELIVERY",
    delivery_address_id: Optional[int] = None,
    billing_address_id: Optional[int] = None,
    delivery_charge_per_vendor: Optional[dict[int, float]] = None,
) -> SubmissionResult:
    """
    カートをベンダーごとに分割し、ベンダー1社につき1件の DRAFT 見積を作成する。

    - 明細の数量・期間・単価はカートからそのまま複製する（再計算しない）
    - 配送料は DELIVERY の場合のみ delivery_charge_per_vendor から取り、なければ 0
    - 成功したらカートの明細をすべて削除する
    - 途中で失敗した場合はすべてロールバックする
    """
    charges = delivery_charge_per_vendor or {}
    for address_id in (delivery_address_id, billing_address_id):
        if address_id is not None:
            _owned_address(db, customer_id, address_id)

    quotation_ids = []
    vendor_names = []

    try:
        with transaction(db):
            # 同じカートの見積提出は直列化する（PostgreSQL は行ロック、SQLite では無視される）
            db.execute(select(Cart.id).where(Cart.customer_id == customer_id).with_for_update()).all()
            cart = db.scalars(
                select(Cart)
                .options(_CART_ITEM_LOAD)
                .where(Cart.customer_id == customer_id)
                .execution_options(populate_existing=True)
            ).first()
            if cart is None or not cart.items:
                raise EmptyCart()

            copied_ids = [i.id for i in cart.items]
            for group in _group_by_vendor(cart.items):
                delivery_charge = charges.get(group.vendor_id, 0) if fulfillment_type == "DELIVERY" else 0
                quotation = Quotation(
                    customer_id=customer_id,
                    vendor_id=group.vendor_id,
                    status="DRAFT",
                    fulfillment_type=fulfillment_type,
                    delivery_charge=delivery_charge,
                    delivery_address_id=delivery_address_id,
                    billing_address_id=billing_address_id,
                )
                quotation.items = [
                    QuotationItem(
                        variant_id=i.variant_id,
                        quantity=i.quantity,
                        rental_start=i.rental_start,
                        rental_end=i.rental_end,
                        price=i.price,
                    )
                    for i in group.items
                ]
                db.add(quotation)
                db.flush()
                quotation_ids.append(quotation.id)
                vendor_names.append(group.vendor_company_name or group.vendor_name)

            # 複製した明細がすべて残っていること（別リクエストが先に提出していれば件数が合わない）
            deleted = db.execute(
                delete(CartItem)
                .where(CartItem.id.in_(copied_ids))
                .execution_options(synchronize_session=False)
            )
            if deleted.rowcount != len(copied_ids):
                logger.info("Cart of customer %s was submitted concurrently; rolling back", customer_id)
                raise EmptyCart()
    except SQLAlchemyError:
        logger.error("Quotation submission rolled back (customer=%s)", customer_id, exc_info=True)
        raise

    views.invalidate("/cart")
    logger.info("Customer %s submitted %d quotation(s): %s", customer_id, len(quotation_ids), quotation_ids)
    return SubmissionResult(quotation_ids=quotation_ids, vendor_names=vendor_names)


def apply_coupon(db: Session, customer_id: int, quotation_id: int, code: str) -> Quotation:
    """確定前の見積にクーポンを適用する"""
    quotation = db.get(Quotation, quotation_id)
    if quotation is None or quotation.customer_id != customer_id:
        raise NotFound("見積が見つかりません")
    if quotation.status not in ("DRAFT", "SENT"):
        raise InvalidTransition()

    coupon = db.scalars(select(Coupon).where(Coupon.code == code.strip().upper())).first()
    if coupon is None or not coupon_is_applicable(coupon, utcnow()):
        raise InvalidCoupon()

    quotation.coupon_id = coupon.id
    db.commit()
    db.refresh(quotation)
    return quotation


def _confirm_sent_quotation(db: Session, quotation_id: int, payment: Optional[PaymentDetails]) -> Optional[RentalOrder]:
    """
    SENT の見積を CONFIRMED にし、受注を作成する。呼び出し側のトランザクション内で実行すること。

    Returns:
        作成した受注。対象外（SENT 以外・受注作成済み・競合で先を越された）なら None。
    """
    # PostgreSQL では行ロックを取る（SQLite では無視される）
    row = db.execute(
        select(Quotation.status).where(Quotation.id == quotation_id).with_for_update()
    ).first()
    if row is None or row.status != "SENT":
        return None
    existing = db.scalar(select(RentalOrder.id).where(RentalOrder.quotation_id == quotation_id))
    if existing is not None:
        return None

    result = db.execute(
        update(Quotation)
        .where(Quotation.id == quotation_id, Quotation.status == "SENT")
        .values(status="CONFIRMED")
    )
    if result.rowcount != 1:
        return None

    quotation = db.scalars(
        select(Quotation)
        .options(selectinload(Quotation.items), selectinload(Quotation.coupon))
        .where(Quotation.id == quotation_id)
    ).one()

    # 割引は保存値を信用せず、クーポンと現在の明細から再計算する
    totals = compute_quotation_totals(quotation.items, quotation.coupon, quotation.delivery_charge)
    order = RentalOrder(
        quotation_id=quotation.id,
        customer_id=quotation.customer_id,
        status="CONFIRMED",
        fulfillment_type=quotation.fulfillment_type or "DELIVERY",
        delivery_charge=totals["delivery_charge"],
        discount_amount=totals["discount"],
        coupon_code=quotation.coupon.code if quotation.coupon else None,
    )
    order.items = [
        OrderItem(
            variant_id=it.variant_id,
            quantity=it.quantity,
            rental_start=it.rental_start,
            rental_end=it.rental_end,
            price=it.price,
        )
        for it in quotation.items
    ]
    db.add(order)

    if payment is not None:
        invoice = Invoice(
            order=order,
            created_by_user_id=quotation.vendor_id,
            rental_amount=totals["subtotal"],
            security_deposit=0,
            delivery_charge=totals["delivery_charge"],
            total_amount=totals["total"],
            paid_amount=payment.amount_paid,
            status="PAID" if payment.amount_paid >= totals["total"] else "PARTIALLY_PAID",
        )
        invoice.payments = [Payment(
            amount=payment.amount_paid,
            status="SUCCEEDED",
            stripe_payment_intent_id=payment.payment_intent_id,
            stripe_checkout_session_id=payment.checkout_session_id,
        )]
        db.add(invoice)

    db.flush()
    return order


def confirm_payment(db: Session, quotation_id: int, payment: Optional[PaymentDetails] = None) -> Optional[RentalOrder]:
    """
    決済完了（Webhook）で見積を確定し、受注を作成する。

    何度呼ばれても（同時に呼ばれても）受注は1件しか作られない。
    既に確定済み・受注作成済み・未送信の見積は「何もしない」で正常終了し None を返す。
    """
    try:
        with transaction(db):
            order = _confirm_sent_quotation(db, quotation_id, payment)
    except IntegrityError:
        # 同時実行した別リクエストが先に受注を作成した
        logger.info("Order for quotation %s was created concurrently; nothing to do", quotation_id)
        return None

    if order is None:
        logger.info("Payment for quotation %s needs no action", quotation_id)
        return None
    logger.info("Quotation %s confirmed by payment; order %s created", quotation_id, order.id)
    return order


# 操作ごとの（許可される現在ステータス, 遷移先）。confirm は受注作成を伴うため別扱い
_QUOTATION_ACTIONS = {
    "send":   (("DRAFT",), "SENT"),
    "cancel": (("DRAFT", "SENT"), "CANCELLED"),
}


def quotation_action(db: Session, vendor_id: int, quotation_id: int, action: str) -> Quotation:
    """
    ベンダーによる見積操作。
    - send:    DRAFT → SENT
    - confirm: SENT → CONFIRMED（受注を作成）
    - cancel:  DRAFT / SENT → CANCELLED

    ステータスは「現在値が許可された値のときだけ更新する」条件付き UPDATE で変更する。
    読み込み後に決済などで先に確定された場合は InvalidTransition になる。
    """
    quotation = db.get(Quotation, quotation_id)
    if quotation is None or quotation.vendor_id != vendor_id:
        raise NotFound("見積が見つかりません")
    if action != "confirm" and action not in _QUOTATION_ACTIONS:
        raise InvalidTransition(f"不明な操作です: {action}")

    status = quotation.status
    try:
        with transaction(db):
            _log_activity(db, vendor_id, f"{action.upper()} quotation", "Quotation", quotation_id)
            if action == "confirm":
                if _confirm_sent_quotation(db, quotation_id, None) is None:
                    raise InvalidTransition(f"{status} の見積に {action} は実行できません")
            else:
                allowed, target = _QUOTATION_ACTIONS[action]
                result = db.execute(
                    update(Quotation)
                    .where(Quotation.id == quotation_id, Quotation.status.in_(allowed))
                    .values(status=target)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidTransition(f"{status} の見積に {action} は実行できません")
    except IntegrityError:
        logger.info("Quotation %s was confirmed concurrently", quotation_id)
        raise InvalidTransition()

    db.refresh(quotation)
    logger.info("Vendor %s: quotation %s %s -> %s", vendor_id, quotation_id, status, quotation.status)
    return quotation


# ─────────────────────────────────────────
# 受注
# ─────────────────────────────────────────

def update_order_status(db: Session, vendor_id: int, order_id: int, status: str) -> RentalOrder:
    """受注ステータスを遷移表（ORDER_TRANSITIONS）に従って更新する"""
    order = db.scalars(
        select(RentalOrder)
        .join(Quotation, RentalOrder.quotation_id == Quotation.id)
        .where(RentalOrder.id == order_id, Quotation.vendor_id == vendor_id)
    ).first()
    if order is None:
        raise NotFound("受注が見つかりません")
    if status not in ORDER_TRANSITIONS.get(order.status, ()):
        raise InvalidTransition(f"{order.status} から {status} には変更できません")

    previous = order.status
    order.status = status
    _log_activity(db, vendor_id, f"ORDER {status}", "RentalOrder", order_id)
    db.commit()
    db.refresh(order)
    logger.info("Vendor %s: order %s %s -> %s", vendor_id, order_id, previous, status)
    return order


# ─────────────────────────────────────────
# 顧客向け一覧
# ─────────────────────────────────────────

def list_customer_quotations(db: Session, customer_id: int) -> list[QuotationListItem]:
    quotations = db.scalars(
        select(Quotation)
        .options(selectinload(Quotation.items), selectinload(Quotation.vendor), selectinload(Quotation.coupon))
        .where(Quotation.customer_id == customer_id)
        .order_by(Quotation.created_at.desc(), Quotation.id.desc())
    ).all()

    result = []
    for q in quotations:
        totals = compute_quotation_totals(q.items, q.coupon, q.delivery_charge)
        start, end = _interval_bounds(q.items)
        result.append(QuotationListItem(
            id=q.id,
            status=q.status,
            vendor_name=q.vendor.name,
            vendor_company_name=q.vendor.company_name,
            item_count=len(q.items),
            delivery_charge=totals["delivery_charge"],
            fulfillment_type=q.fulfillment_type,
            created_at=q.created_at,
            rental_start=start,
            rental_end=end,
            total_amount=totals["total"],
        ))
    return result


def list_customer_orders(db: Session, customer_id: int) -> list[OrderListItem]:
    orders = db.scalars(
        select(RentalOrder)
        .options(
            selectinload(RentalOrder.items),
            selectinload(RentalOrder.quotation).selectinload(Quotation.vendor),
        )
        .where(RentalOrder.customer_id == customer_id)
        .order_by(RentalOrder.created_at.desc(), RentalOrder.id.desc())
    ).all()

    result = []
    for o in orders:
        subtotal = sum(i.price * i.quantity for i in o.items)
        start, end = _interval_bounds(o.items)
        vendor = o.quotation.vendor
        result.append(OrderListItem(
            id=o.id,
            quotation_id=o.quotation_id,
            status=o.status,
            vendor_name=vendor.name,
            vendor_company_name=vendor.company_name,
            item_count=len(o.items),
            delivery_charge=o.delivery_charge or 0,
            fulfillment_type=o.fulfillment_type,
            created_at=o.created_at,
            rental_start=start,
            rental_end=end,
            total_amount=max(0, subtotal - (o.discount_amount or 0) + (o.delivery_charge or 0)),
        ))
    return result
