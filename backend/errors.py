"""
業務エラー定義モジュール。
ルート層（main.py）が status_code をそのまま HTTP ステータスに変換する。
"""


class MarketplaceError(Exception):
    """業務エラーの基底クラス。message はそのまま利用者に表示できる文言。"""
    status_code = 400
    message = "リクエストを処理できませんでした"

    def __init__(self, message: str = None):
        self.message = message or self.message
        super().__init__(self.message)


# ─────────────────────────────────────────
# 入力検証エラー（再試行しない）
# ─────────────────────────────────────────

class InvalidDateRange(MarketplaceError):
    message = "終了日時は開始日時より後にしてください"


class InvalidQuantity(MarketplaceError):
    message = "数量は1以上を指定してください"


class EmptyCart(MarketplaceError):
    message = "カートが空です"


class InvalidCoupon(MarketplaceError):
    message = "このクーポンは利用できません"


# ─────────────────────────────────────────
# 業務状態エラー
# ─────────────────────────────────────────

class UnpriceableVariant(MarketplaceError):
    """適用できるレンタル料金が設定されていない"""
    message = "この期間の料金を計算できません"


class InvalidTransition(MarketplaceError):
    status_code = 409
    message = "現在のステータスではこの操作はできません"


class VendorBlocked(MarketplaceError):
    status_code = 409
    message = "このベンダーの商品は現在レンタルできません"


class VariantInUse(MarketplaceError):
    """カート・見積・受注から参照されているバリアントは削除できない"""
    status_code = 409
    message = "使用中のバリアントは削除できません"


class InvalidRentalPeriod(MarketplaceError):
    message = "無効または停止中のレンタル期間です"


# ─────────────────────────────────────────
# 認可・存在確認
# ─────────────────────────────────────────

class Unauthorized(MarketplaceError):
    status_code = 401
    message = "Unauthorized"


class Forbidden(MarketplaceError):
    status_code = 403
    message = "この操作を行う権限がありません"


class NotFound(MarketplaceError):
    status_code = 404
    message = "指定されたデータが見つかりません"


class InvalidWebhook(MarketplaceError):
    """決済プロバイダからの通知が検証できない・必要な値がない"""
    message = "Invalid webhook"
