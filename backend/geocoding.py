"""
OpenRouteService クライアント（ジオコーディング・走行距離）。

外部APIの失敗はすべて None として返し、呼び出し側に例外を伝播させない。
配送料計算は距離が取れない場合でも計算可能な範囲で継続する。
"""

import logging
from typing import Optional

import httpx

from constants import GEOCODE_TIMEOUT_SECONDS, OPENROUTESERVICE_API_KEY, OPENROUTESERVICE_BASE_URL

logger = logging.getLogger(__name__)

# (経度, 緯度)
LonLat = tuple[float, float]


def format_address_for_geocode(address) -> str:
    """住所を1行の検索文字列にする（空の要素は除く）"""
    parts = [
        address.line1,
        address.line2,
        address.city,
        address.state,
        address.country,
        address.pincode,
    ]
    return ", ".join(p for p in parts if p)


class OpenRouteServiceClient:
    """
    OpenRouteService API の薄いラッパー。
    api_key が未設定の場合は外部通信を行わず常に None を返す。
    """

    def __init__(
        self,
        api_key: str = OPENROUTESERVICE_API_KEY,
        base_url: str = OPENROUTESERVICE_BASE_URL,
        timeout: float = GEOCODE_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def geocode(self, text: str) -> Optional[LonLat]:
        """住所文字列を (経度, 緯度) に変換する。見つからない場合・エラー時は None。"""
        if not self.enabled:
            logger.warning("OPENROUTESERVICE_API_KEY not set; skipping geocode")
            return None
        try:
            response = httpx.get(
                f"{self.base_url}/geocode/search",
                params={"api_key": self.api_key, "text": text},
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning("Geocode returned %s for %r", response.status_code, text)
                return None
            features = response.json().get("features") or []
            if not features:
                return None
            coords = (features[0].get("geometry") or {}).get("coordinates")
            if not coords or len(coords) < 2:
                return None
            return float(coords[0]), float(coords[1])
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Geocode failed for %r: %s", text, e)
            return None

    def driving_distance_km(self, origin: LonLat, destination: LonLat) -> Optional[float]:
        """2地点間の走行距離（km）。エラー時は None。"""
        if not self.enabled:
            logger.warning("OPENROUTESERVICE_API_KEY not set; skipping distance lookup")
            return None
        try:
            response = httpx.post(
                f"{self.base_url}/v2/matrix/driving-car",
                params={"api_key": self.api_key},
                json={"locations": [list(origin), list(destination)], "metrics": ["distance"]},
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning("Distance matrix returned %s", response.status_code)
                return None
            distances = response.json().get("distances") or []
            meters = distances[0][1] if distances and len(distances[0]) > 1 else None
            if meters is None:
                return None
            return float(meters) / 1000
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Distance lookup failed: %s", e)
            return None
