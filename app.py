# app.py - mission dashboard: progress strip, evaluation, K, per-table ladder state, manual hand feed

import os
import time

import pandas as pd
import streamlit as st

# ---- Environment flag ----
APP_ENV = os.getenv("APP_ENV", "prod")

# ---- Page meta (run first) ----
env_suffix = " (DEV)" if APP_ENV == "dev" else ""
st.set_page_config(
    page_title=f"Ladder Mission Control{env_suffix}",
    page_icon="🃏",
    layout="wide",
    initial_sidebar_state="expanded",
)

from action_codes import action_code
from engine import DecisionEngine
from models import LadderConfigError
from store import make_store

EVAL_COLORS = {
    "gray": "#9ca3af",
    "red": "#f87171",
    "yellow": "#f2e6a5",
    "green": "#4ade80",
}


# ---- Store: one per server process, shared by every browser session ----
@st.cache_resource
def _shared_store():
    print(f"[app] store created (backend={os.getenv('LADDER_BACKEND', 'memory')})")
    return make_store()


# ---- Engine (one per browser session, on top of the shared store) ----
def _get_engine() -> DecisionEngine:
    if "engine" not in st.session_state:
        st.session_state.engine = DecisionEngine(_shared_store())
        st.session_state.mission_started_at = time.time()
    return st.session_state.engine


eng = _get_engine()
st.session_state.setdefault("mission_started_at", time.time())
st.session_state.setdefault("last_advice", None)

elapsed_min = (time.time() - float(st.session_state.mission_started_at)) / 60.0


# ------------------ Sidebar: mission + K ------------------
with st.sidebar:
    st.header("Mission")
    with st.form("mission_form"):
        target_units = st.number_input("Target (units)", min_value=100.0, value=1500.0, step=50.0)
        target_minutes = st.number_input("Duration (minutes)", min_value=60.0, value=540.0, step=30.0)
        if st.form_submit_button("Start new mission"):
            eng.initialize(target_margin_units=target_units, target_minutes=target_minutes)
            st.session_state.mission_started_at = time.time()
            st.session_state.last_advice = None
            st.success("Mission started.")
            st.rerun()

    active_tables = int(st.number_input("Active tables", min_value=1, max_value=50, value=10, step=1))

    st.divider()
    st.header("Unit value (K)")
    new_k = st.number_input("K", value=float(eng.get_k()), step=0.5, format="%.2f")
    if st.button("Apply K"):
        try:
            eng.set_k(new_k)
            st.success(f"K set to {new_k:.2f}")
        except LadderConfigError as e:
            st.error(str(e))

    if st.button("New shoe (reset override budget)"):
        eng.start_new_shoe()
        st.toast("Override budget reset for the new shoe.")


# ------------------ Main Page ------------------
st.title("🃏 Ladder Mission Control")

snap = eng.snapshot(elapsed_min, active_tables)
ev = eng.evaluate(elapsed_min, active_tables)
g = eng.store.get_global_state()

c1, c2, c3, c4, c5 = st.columns(5)
c1.metric("Global margin", f"{g.global_margin_units * snap.k:,.2f}")
c2.metric("Target", f"{snap.display_target:,.0f}")
c3.metric("Achievement", f"{snap.achievement_percent:.2f}%")
c4.metric("Heavy slots", f"{g.heavy_count}", delta=f"cooldown {g.cooldown}", delta_color="off")
c5.metric("Portfolio debt", f"{g.portfolio_debt_units:,.0f}u")

st.markdown(
    f"<div style='padding:10px 14px;border-radius:12px;border:1px solid #2b2b2b;"
    f"color:{EVAL_COLORS.get(ev.color, '#e5e7eb')}'>{ev.message}</div>",
    unsafe_allow_html=True,
)

if snap.mission_completed:
    st.success("🟢 Mission complete: all tables stop, no new heavy authorizations.")
elif snap.warm_up_active:
    st.info(f"Warm-up: {elapsed_min:.1f} / {snap.warm_up_minutes:.0f} min")

st.caption(
    f"Elapsed {elapsed_min:.1f} min · VmTarget {snap.display_vm_target:.2f}/min · "
    f"Overrides {g.hot_overrides_active} active / {g.hot_overrides_used_this_shoe} used this shoe"
)


# ------------------ Manual hand feed ------------------
st.subheader("Feed a hand")
with st.form("hand_form"):
    f1, f2, f3, f4 = st.columns(4)
    table_id = int(f1.number_input("Table", min_value=1, value=1, step=1))
    hand_index = int(f2.number_input("Hand #", min_value=1, value=1, step=1))
    margin = f3.number_input("Table margin (display)", value=0.0, step=1.0)
    level_ui = int(f4.number_input("Martingale level", min_value=1, max_value=8, value=1, step=1))

    o1, o2, o3 = st.columns(3)
    outcome = o1.selectbox("Outcome", ["(infer)", "B", "P", "T"])
    hot_zone = o2.checkbox("Hot zone")
    signal = o3.checkbox("Signal flag")

    if st.form_submit_button("Decide"):
        adv = eng.decide(
            table_id,
            hand_index,
            float(margin),
            level_ui,
            signal_flag=signal,
            hot_zone_flag=hot_zone,
            outcome_symbol=None if outcome == "(infer)" else outcome,
            elapsed_minutes=elapsed_min,
            active_table_count=active_tables,
        )
        st.session_state.last_advice = adv

adv = st.session_state.last_advice
if adv is not None:
    a1, a2, a3, a4 = st.columns(4)
    a1.metric("Next level", f"L{adv.level_index + 1}")
    a2.metric("Stake", f"{adv.stake_units:,.2f}")
    a3.metric("Action", action_code(adv))
    a4.metric("Prediction", adv.prediction)
    st.write(f"**{adv.reason}** · {adv.table_status} · W10 {adv.signal_w10} · {adv.hot_zone_label}")
    if adv.tooltip_json:
        with st.expander("Diagnostics"):
            st.code(adv.tooltip_json, language="json")


# ------------------ Tables ------------------
st.subheader("Tables")


def tables_to_dataframe(engine: DecisionEngine) -> pd.DataFrame:
    data = []
    for tid in engine.store.list_table_ids():
        ts = engine.store.get_table_state(tid)
        rs = ts.row_state
        last = ts.last_advice
        data.append({
            "Table": tid,
            "Margin (u)": round(ts.margin_units, 2),
            "Hands": rs.hand_count,
            "Level": (rs.prev_level + 1) if rs.prev_mazzo is not None else None,
            "Vm20": round(rs.vm_local20, 2),
            "Run P": rs.run_p,
            "Heavy": "✅" if rs.force_to_l8_active else "",
            "L5 closed": rs.l5_closed_count,
            "Status": "🔴 Disabled" if rs.disabled else (last.table_status if last else "🟢 Active"),
            "Last reason": last.reason if last else "",
        })
    return pd.DataFrame(data)


df = tables_to_dataframe(eng)
if df.empty:
    st.caption("No hands yet.")
else:
    st.dataframe(df, hide_index=True, use_container_width=True)

    disabled = [int(t) for t, s in zip(df["Table"], df["Status"]) if "Disabled" in str(s)]
    if disabled:
        pick = st.selectbox("Re-enable table", disabled)
        if st.button("Reset table"):
            eng.reset_table(pick)
            st.rerun()
