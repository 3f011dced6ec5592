"""
dashboard/app.py  ― スーパー管理者向け運用ダッシュボード

【3タブ構成】
  🏠 概況             : KPI カード / 運用アラート / 直近の受注
  🏪 ベンダー別売上   : ベンダーごとの受注件数・売上（棒グラフ）
  📦 受注ステータス   : ステータス別の件数（ドーナツ）

【起動方法】
  cd backend
  streamlit run dashboard/app.py
"""

import os
import sys as _sys

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

_sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from database import SessionLocal, engine
from reports import platform_orders, revenue_by_vendor, status_breakdown

from dashboard.utils import (
    apply_custom_css, chart_layout, format_amount, hex_to_rgba, render_alerts, render_kpi_row, status_colors,
)

st.set_page_config(
    page_title="Rental Marketplace Dashboard",
    page_icon="📦",
    layout="wide",
    initial_sidebar_state="collapsed",
)

apply_custom_css()

# ─── データ取得 ───────────────────────────────────────────────────

@st.cache_data(ttl=60)
def load_orders() -> pd.DataFrame:
    db = SessionLocal()
    try:
        return platform_orders(db)
    finally:
        db.close()


@st.cache_data(ttl=60)
def load_invoices() -> pd.DataFrame:
    return pd.read_sql("SELECT id, status, total_amount, paid_amount, created_at FROM invoices", engine)


@st.cache_data(ttl=60)
def load_user_counts() -> pd.DataFrame:
    return pd.read_sql(
        """
        SELECT u.role AS role, COUNT(*) AS users,
               SUM(CASE WHEN b.id IS NULL THEN 0 ELSE 1 END) AS blocked
        FROM users u
        LEFT JOIN blocked_vendors b ON b.vendor_id = u.id
        GROUP BY u.role
        """,
        engine,
    )


orders_df = load_orders()
invoices_df = load_invoices()
users_df = load_user_counts()

# ─── ヘッダー ──────────────────────────────────────────────────────
st.markdown("""
<h1>📦 Rental Marketplace Dashboard</h1>
<p style='color:#cbd5e1; margin-top:-12px; margin-bottom:20px;'>
  プラットフォーム全体の受注・売上・ベンダー状況
</p>
""", unsafe_allow_html=True)

tab_overview, tab_vendors, tab_status = st.tabs(["🏠 概況", "🏪 ベンダー別売上", "📦 受注ステータス"])

# ─── 概況 ─────────────────────────────────────────────────────────
with tab_overview:
    role_counts = dict(zip(users_df["role"], users_df["users"])) if not users_df.empty else {}
    blocked = int(users_df["blocked"].sum()) if not users_df.empty else 0
    paid = invoices_df[invoices_df["status"] == "PAID"] if not invoices_df.empty else invoices_df
    partially_paid = int((invoices_df["status"] == "PARTIALLY_PAID").sum()) if not invoices_df.empty else 0

    render_alerts(blocked, partially_paid)

    revenue = float(paid["total_amount"].sum()) if not paid.empty else 0.0
    render_kpi_row([
        ("受注数", f"{len(orders_df):,}", "全ベンダー合計"),
        ("売上（支払済み）", format_amount(revenue), f"請求書 {len(paid)} 件"),
        ("ベンダー", f"{role_counts.get('VENDOR', 0)}", f"うちブロック中 {blocked} 社"),
        ("顧客", f"{role_counts.get('CUSTOMER', 0)}", ""),
    ])

    st.subheader("直近の受注")
    if orders_df.empty:
        st.info("受注データがありません。`python init_db.py` で初期データを投入してください。")
    else:
        recent = orders_df.sort_values("created_at", ascending=False).head(10)
        st.dataframe(recent, use_container_width=True, hide_index=True)

# ─── ベンダー別売上 ───────────────────────────────────────────────
with tab_vendors:
    by_vendor = revenue_by_vendor(orders_df)
    if by_vendor.empty:
        st.info("集計対象の受注がありません。")
    else:
        fig = go.Figure(go.Bar(
            x=by_vendor["vendor"],
            y=by_vendor["revenue"],
            text=by_vendor["orders"].map(lambda n: f"{n} 件"),
            textposition="outside",
            marker=dict(color=hex_to_rgba("#a78bfa", 0.7), line=dict(color="#a78bfa", width=1)),
        ))
        st.plotly_chart(chart_layout(fig, "ベンダー別売上（キャンセル除く）", "売上"), use_container_width=True)
        st.dataframe(by_vendor, use_container_width=True, hide_index=True)

# ─── 受注ステータス ───────────────────────────────────────────────
with tab_status:
    breakdown = status_breakdown(orders_df)
    if breakdown.empty:
        st.info("受注データがありません。")
    else:
        fig = go.Figure(go.Pie(
            labels=breakdown["status"],
            values=breakdown["count"],
            hole=0.55,
            marker=dict(colors=status_colors(breakdown["status"])),
        ))
        st.plotly_chart(chart_layout(fig, "受注ステータス内訳"), use_container_width=True)
