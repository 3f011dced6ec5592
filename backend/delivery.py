"""
配送料計算モジュール。
カートをベンダー単位に分けたうえで、各ベンダーの配送設定（無料 / 定額 / 距離課金）と
外部の走行距離から配送料を算出する。

【ルール】
  - 配送無効 / 設定なし / FREE         → 0円（距離は取得しない）
  - FLAT                              → 定額。ただし小計が free_above_amount 以上なら 0円
  - PER_KM                            → min(距離, max_delivery_km) × 単価。free_above_amount で免除
  - 距離が取得できない PER_KM         → 0円（エラーにはしない）
  - 各ベンダーの金額・合計はいずれも小数第2位で四捨五入
"""

import logging
from typing import NamedTuple, Optional

from geocoding import LonLat, format_address_for_geocode
from models import Address, VendorDeliveryConfig
from pricing import round_currency
from schemas import DeliveryChargeResult, VendorDeliveryCharge

logger = logging.getLogger(__name__)


class VendorShipment(NamedTuple):
    """1ベンダー分の配送料計算の入力"""
    vendor_id: int
    vendor_name: str
    subtotal: float
    config: Optional[VendorDeliveryConfig]
    pickup_address: Optional[Address]


def is_free_delivery(config: Optional[VendorDeliveryConfig]) -> bool:
    return config is None or not config.is_delivery_enabled or config.charge_type == "FREE"


def calc_vendor_charge(config: VendorDeliveryConfig, subtotal: float, distance_km: Optional[float]) -> float:
    """
    1ベンダー分の配送料（丸め前）を計算する。

    Args:
        config:      ベンダーの配送設定（FREE 以外）
        subtotal:    そのベンダー分のカート小計
        distance_km: 集荷元から配送先までの距離（不明なら None）
    """
    waived = config.free_above_amount is not None and subtotal >= config.free_above_amount

    if config.charge_type == "FLAT" and config.flat_charge is not None:
        return 0 if waived else config.flat_charge

    if config.charge_type == "PER_KM" and config.rate_per_km is not None and distance_km is not None:
        billable_km = distance_km
        if config.max_delivery_km is not None:
            billable_km = min(distance_km, config.max_delivery_km)
        return 0 if waived else billable_km * config.rate_per_km

    return 0


def compute_delivery_charges(shipments: list[VendorShipment], destination: Address, geocoder) -> DeliveryChargeResult:
    """
    ベンダーごとの配送料と合計を返す。

    ジオコーディング・距離取得の失敗は致命的ではなく、distance_km = None として扱う。
    配送先の座標は最初に必要になった時点で1回だけ取得する。

    Args:
        shipments:   ベンダー単位の入力（カート内の出現順）
        destination: 配送先住所
        geocoder:    geocode() / driving_distance_km() を持つオブジェクト
    """
    per_vendor = []
    total = 0.0
    dest_coords: Optional[LonLat] = None
    dest_resolved = False

    for shipment in shipments:
        config = shipment.config
        if is_free_delivery(config):
            per_vendor.append(VendorDeliveryCharge(
                vendor_id=shipment.vendor_id,
                vendor_name=shipment.vendor_name,
                charge=0,
                distance_km=None,
            ))
            continue

        if not dest_resolved:
            dest_coords = geocoder.geocode(format_address_for_geocode(destination))
            dest_resolved = True

        distance_km = None
        if shipment.pickup_address is not None and dest_coords is not None:
            origin = geocoder.geocode(format_address_for_geocode(shipment.pickup_address))
            if origin is not None:
                distance_km = geocoder.driving_distance_km(origin, dest_coords)

        if distance_km is None and config.charge_type == "PER_KM":
            logger.warning("Distance unavailable for vendor %s; per-km charge falls back to 0", shipment.vendor_id)

        charge = round_currency(calc_vendor_charge(config, shipment.subtotal, distance_km))
        per_vendor.append(VendorDeliveryCharge(
            vendor_id=shipment.vendor_id,
            vendor_name=shipment.vendor_name,
            charge=charge,
            distance_km=distance_km,
        ))
        total += charge

    return DeliveryChargeResult(per_vendor=per_vendor, total_delivery_charge=round_currency(total))
