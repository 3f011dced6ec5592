"""
一覧系レスポンスのプロセス内キャッシュ。
キーはリクエストパス（例: "/products", "/cart:12"）。更新系の処理はパスの接頭辞で無効化する。
"""

import logging
import threading
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

VIEW_TTL_SECONDS = 60

_lock = threading.Lock()
# key -> (有効期限, 値)
_cache: dict[str, tuple[float, Any]] = {}


def cached(key: str, build: Callable[[], Any], ttl: float = VIEW_TTL_SECONDS) -> Any:
    """
    キャッシュがあれば返し、なければ build() の結果を保存して返す。
    期限切れのエントリは呼び出しのたびに掃除するため、キーが増え続けることはない。
    """
    now = time.monotonic()
    with _lock:
        expired = [k for k, (expires_at, _) in _cache.items() if expires_at <= now]
        for k in expired:
            del _cache[k]
        hit = _cache.get(key)
        if hit is not None:
            return hit[1]
    value = build()
    with _lock:
        _cache[key] = (now + ttl, value)
    return value


def invalidate(*prefixes: str) -> None:
    """指定した接頭辞で始まるキャッシュをすべて破棄する"""
    with _lock:
        stale = [k for k in _cache if k.startswith(prefixes)]
        for k in stale:
            del _cache[k]
    if stale:
        logger.debug("Invalidated views: %s", stale)


def clear() -> None:
    with _lock:
        _cache.clear()
