"""
dashboard/utils.py
運用ダッシュボードの配色・KPI カード・グラフ共通レイアウト。
"""

import plotly.graph_objects as go
import streamlit as st

CURRENCY = "₹"

# 受注ステータスの表示色
STATUS_COLORS = {
    "CONFIRMED": "#60a5fa",
    "ACTIVE":    "#4ade80",
    "COMPLETED": "#a78bfa",
    "CANCELLED": "#f87171",
}
FALLBACK_COLOR = "#94a3b8"


def hex_to_rgba(hex_color: str, opacity: float) -> str:
    """#RRGGBB を rgba() 文字列に変換する"""
    h = hex_color.lstrip("#")
    r, g, b = (int(h[i:i + 2], 16) for i in (0, 2, 4))
    return f"rgba({r}, {g}, {b}, {opacity})"


def status_colors(statuses) -> list[str]:
    return [STATUS_COLORS.get(s, FALLBACK_COLOR) for s in statuses]


def format_amount(value: float) -> str:
    return f"{CURRENCY}{value:,.0f}"


def chart_layout(fig: go.Figure, title: str = "", yaxis_title: str = "") -> go.Figure:
    """グラフの背景を透過し、ダッシュボードの配色に合わせる"""
    fig.update_layout(
        title=dict(text=title, x=0.01),
        template="plotly_dark",
        paper_bgcolor="rgba(0,0,0,0)",
        plot_bgcolor="rgba(0,0,0,0)",
        margin=dict(l=16, r=16, t=56, b=32),
        font=dict(color="#e2e8f0"),
        yaxis=dict(title=yaxis_title, gridcolor="#1e293b"),
        showlegend=True,
    )
    return fig


def render_kpi_row(cards: list[tuple[str, str, str]]):
    """
    KPI カードを横一列に描画する。

    Args:
        cards: (見出し, 値, 補足) のリスト
    """
    for column, (label, value, note) in zip(st.columns(len(cards)), cards):
        with column:
            st.markdown(
                f"<div class='kpi'><div class='kpi-label'>{label}</div>"
                f"<div class='kpi-value'>{value}</div><div class='kpi-note'>{note}</div></div>",
                unsafe_allow_html=True,
            )


def render_alerts(blocked_count: int, partially_paid: int):
    """ブロック中ベンダー・一部入金の請求書があれば注意を表示する"""
    if blocked_count:
        st.error(f"ブロック中のベンダーが {blocked_count} 社あります（新規レンタル不可）。", icon="⛔")
    if partially_paid:
        st.warning(f"一部入金のままの請求書が {partially_paid} 件あります。", icon="⚠️")


def apply_custom_css():
    st.markdown("""
    <style>
    .stApp { background: #0b1120; }
    .kpi {
        background: #111827;
        border: 1px solid #1f2937;
        border-radius: 12px;
        padding: 18px 20px;
        margin-bottom: 16px;
    }
    .kpi-label { font-size: 0.8rem; color: #94a3b8; letter-spacing: 0.04em; }
    .kpi-value { font-size: 1.8rem; font-weight: 800; color: #f8fafc; margin: 6px 0 2px; }
    .kpi-note  { font-size: 0.85rem; color: #cbd5e1; min-height: 1.2em; }
    </style>
    """, unsafe_allow_html=True)
