"""
constants.py
システム全体で使用する共通定数と環境変数由来の設定値を管理。
"""

import os

from dotenv import load_dotenv

load_dotenv()

# レンタル期間の単位（RentalPeriod.unit）
PERIOD_UNITS = ("HOUR", "DAY", "WEEK", "MONTH", "YEAR")

# 料金按分の基準
HOURS_PER_DAY   = 24
DAYS_PER_WEEK   = 7
DAYS_PER_MONTH  = 30

# ステータス定義
QUOTATION_STATUSES = ("DRAFT", "SENT", "CONFIRMED", "CANCELLED")
ORDER_STATUSES     = ("CONFIRMED", "ACTIVE", "COMPLETED", "CANCELLED")
FULFILLMENT_TYPES  = ("STORE_PICKUP", "DELIVERY")
DELIVERY_CHARGE_TYPES = ("FREE", "FLAT", "PER_KM")
COUPON_TYPES       = ("FLAT", "PERCENTAGE")

# 受注ステータスの遷移表（現在 → 遷移可能な次ステータス）
ORDER_TRANSITIONS = {
    "CONFIRMED": ("ACTIVE", "CANCELLED"),
    "ACTIVE":    ("COMPLETED", "CANCELLED"),
    "COMPLETED": (),
    "CANCELLED": (),
}

# 一覧系API
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE     = 50

# 認証（セッショントークン）
JWT_SECRET       = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM    = "HS256"
AUTH_COOKIE_NAME = "auth_token"

# ジオコーディング（OpenRouteService）
OPENROUTESERVICE_API_KEY  = os.getenv("OPENROUTESERVICE_API_KEY", "")
OPENROUTESERVICE_BASE_URL = os.getenv("OPENROUTESERVICE_BASE_URL", "https://api.openrouteservice.org")
GEOCODE_TIMEOUT_SECONDS   = float(os.getenv("GEOCODE_TIMEOUT_SECONDS", "10"))

# 決済（Stripe）
STRIPE_SECRET_KEY     = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

# メール送信
SMTP_HOST     = os.getenv("SMTP_HOST", "")
SMTP_PORT     = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER     = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM     = os.getenv("SMTP_FROM", SMTP_USER)

APP_URL      = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
