import logging
from datetime import date
from typing import Dict, Optional

import streamlit as st

from config import APP, DOSE, GLUCOSE, HISTORY
from logging_config import configure_logging
from titration import (
    DOSE_FIELDS,
    READING_FIELDS,
    InitialDoseResult,
    InvalidConfigError,
    InvalidWeightError,
    TitrationConfig,
    calculate_initial_dose,
    get_suggested_dose,
    validate_config,
)
from records import (
    READING_LABELS,
    InvalidPhoneError,
    MissingReadingsError,
    build_daily_record,
    doses_from_initial,
    next_day_doses,
    validate_phone,
)
from export import (
    SnapshotError,
    build_snapshot,
    export_filename,
    frame_to_csv_bytes,
    glucose_trend_figure,
    records_to_frame,
    restore_snapshot,
    snapshot_to_json,
)
from storage import (
    DuplicateRecordError,
    init_db,
    get_profile,
    upsert_profile,
    delete_profile,
    save_initial_dose,
    save_daily_record,
    fetch_daily_records,
    delete_daily_record,
    load_config,
    save_config,
    reset_config,
)

st.set_page_config(page_title=APP["title"], layout="wide")

configure_logging()
logger = logging.getLogger(__name__)

init_db()

# -------------------------
# Header + Disclaimer
# -------------------------
st.title(APP["title"])
st.info(APP["disclaimer"])

with st.expander("How suggestions are made", expanded=False):
    st.markdown(
        """
Each dose is adjusted by the glucose reading taken **after** it has acted (staggered titration):

- **Basal** ← next morning's fasting glucose
- **Breakfast** ← pre-lunch glucose
- **Lunch** ← pre-dinner glucose
- **Dinner** ← bedtime glucose

A reading that is not entered keeps the current dose unchanged. Thresholds are set on the **Rules** tab.
        """
    )

SESSION_KEYS = ["phone", "display_name", "form_user", "weight_kg", "initial_error"] + list(READING_FIELDS) + list(DOSE_FIELDS)

# ---------- QUICK ACCESS LOGIN ----------
if "phone" not in st.session_state:
    st.subheader("Quick Access Login")
    st.caption("Patients are identified by phone number. Existing profiles are loaded automatically.")

    full_name = st.text_input("Full Name")
    phone = st.text_input("Phone Number")

    if st.button("Continue"):
        if not full_name.strip():
            st.error("Enter the patient's full name.")
            st.stop()
        try:
            phone_n = validate_phone(phone)
        except InvalidPhoneError as e:
            st.error(str(e))
            st.stop()

        prof = get_profile(phone_n)
        if prof is None:
            upsert_profile(phone_n, {"full_name": full_name.strip()})
            logger.info("Created profile for user ending %s", phone_n[-4:])

        st.session_state["phone"] = phone_n
        st.session_state["display_name"] = (prof or {}).get("full_name") or full_name.strip()
        st.rerun()

    st.stop()

phone = st.session_state["phone"]
profile = get_profile(phone) or {}
config: TitrationConfig = load_config()

st.sidebar.success(f"Patient: {st.session_state.get('display_name', 'User')}")
st.sidebar.caption(f"Phone: {phone}")
if st.sidebar.button("Switch patient"):
    for k in SESSION_KEYS:
        st.session_state.pop(k, None)
    st.rerun()

with st.sidebar.expander("Delete patient"):
    confirm = st.checkbox("I understand this removes the profile and all records.")
    if st.button("Delete profile", disabled=not confirm):
        delete_profile(phone)
        for k in SESSION_KEYS:
            st.session_state.pop(k, None)
        st.rerun()

# -------------------------
# Helpers
# -------------------------
def _init_form_state() -> None:
    # Prefill current doses once per patient: last suggestion, else initial doses
    if st.session_state.get("form_user") == phone:
        return
    latest = fetch_daily_records(phone, limit=1)
    doses = next_day_doses(latest[0]) if latest else doses_from_initial(profile)
    for k, v in doses.items():
        st.session_state[k] = v
    for k in READING_FIELDS + ("weight_kg", "initial_error"):
        st.session_state.pop(k, None)
    st.session_state["form_user"] = phone

def _apply_initial_doses(result: InitialDoseResult) -> None:
    st.session_state["cur_basal"] = result.basal_dose
    st.session_state["cur_breakfast"] = result.breakfast_dose
    st.session_state["cur_lunch"] = result.lunch_dose
    st.session_state["cur_dinner"] = result.dinner_dose

def _form_values() -> Dict[str, Optional[float]]:
    return {k: st.session_state.get(k) for k in READING_FIELDS + DOSE_FIELDS}

def _calc_initial() -> None:
    try:
        result = calculate_initial_dose(st.session_state.get("weight_kg"), config)
    except InvalidWeightError as e:
        st.session_state["initial_error"] = str(e)
        return
    st.session_state.pop("initial_error", None)
    save_initial_dose(phone, result)
    _apply_initial_doses(result)

_init_form_state()

tabs = st.tabs(["1) Titration", "2) History", "3) Rules", "4) Export"])

# -------------------------
# 1) Titration
# -------------------------
with tabs[0]:
    st.subheader("Initial doses (from body weight)")

    c_w, c_t, c_m, c_b = st.columns(4)
    with c_w:
        st.number_input(
            "Weight (kg)",
            min_value=0.0,
            max_value=DOSE["weight_max_kg"],
            value=float(profile.get("weight_kg") or 0.0),
            step=0.5,
            key="weight_kg",
        )
        st.button("Calculate initial doses", on_click=_calc_initial)
    with c_t:
        st.metric("Total daily dose", f"{profile['total_dose']} U" if profile.get("total_dose") is not None else "--")
    with c_m:
        st.metric("Each meal", f"{profile['breakfast_dose']} U" if profile.get("breakfast_dose") is not None else "--")
    with c_b:
        st.metric("Basal", f"{profile['basal_dose']} U" if profile.get("basal_dose") is not None else "--")

    if st.session_state.get("initial_error"):
        st.error(st.session_state["initial_error"])

    st.divider()
    st.subheader("Daily titration")

    record_date = st.date_input("Date", value=date.today())

    st.markdown("**Glucose readings (mmol/L)**")
    r_cols = st.columns(4)
    for col, k in zip(r_cols, READING_FIELDS):
        with col:
            st.number_input(
                READING_LABELS[k],
                min_value=0.0,
                max_value=GLUCOSE["input_max"],
                step=GLUCOSE["input_step"],
                format="%.1f",
                value=None,
                placeholder="not measured",
                key=k,
            )

    st.markdown("**Current insulin doses (U)**")
    dose_labels = {
        "cur_breakfast": "Before breakfast",
        "cur_lunch": "Before lunch",
        "cur_dinner": "Before dinner",
        "cur_basal": "Basal / bedtime",
    }
    d_cols = st.columns(4)
    for col, k in zip(d_cols, dose_labels):
        with col:
            st.number_input(dose_labels[k], min_value=0, max_value=DOSE["input_max"], step=1, key=k)

    values = _form_values()
    sug = get_suggested_dose(values, config)

    st.markdown("**Suggested doses (U)**")
    s_cols = st.columns(4)
    for col, (label, new, cur) in zip(s_cols, [
        ("Breakfast", sug.breakfast, values["cur_breakfast"]),
        ("Lunch", sug.lunch, values["cur_lunch"]),
        ("Dinner", sug.dinner, values["cur_dinner"]),
        ("Basal", sug.basal, values["cur_basal"]),
    ]):
        with col:
            st.metric(label, f"{new} U", delta=(new - (cur or 0)) or None, delta_color="off")

    low = [READING_LABELS[k] for k in READING_FIELDS if values[k] and values[k] < GLUCOSE["hypo"]]
    if low:
        st.warning(f"Low glucose recorded ({', '.join(low)}). Check for hypoglycaemia before increasing any dose.")

    replace_existing = st.checkbox("Overwrite an existing record for this date", value=False)

    if st.button("Save today's plan", type="primary"):
        try:
            record = build_daily_record(record_date, values, values, config)
            save_daily_record(phone, record, replace=replace_existing)
        except MissingReadingsError as e:
            st.error(f"Enter all four readings before saving. Missing: {', '.join(e.missing)}.")
        except DuplicateRecordError as e:
            st.error(f"{e} Tick 'Overwrite' to replace it.")
        else:
            st.success("Saved ✅ Titration plan added to history.")

# -------------------------
# 2) History
# -------------------------
with tabs[1]:
    st.subheader(f"History (last {HISTORY['max_records']} days)")

    records = fetch_daily_records(phone)
    if not records:
        st.info("No records yet.")
    else:
        df = records_to_frame(records)
        st.dataframe(df, use_container_width=True, hide_index=True)

        st.write("### Glucose trend")
        st.pyplot(glucose_trend_figure(records))

        latest = records[0]
        st.write(
            f"Latest plan ({latest['record_date'].isoformat()}): "
            f"**{latest['sug_breakfast']}U / {latest['sug_lunch']}U / "
            f"{latest['sug_dinner']}U / {latest['sug_basal']}U** (breakfast / lunch / dinner / basal)"
        )

        with st.expander("Delete a record"):
            by_date = {r["record_date"].isoformat(): r["id"] for r in records}
            chosen = st.selectbox("Date", list(by_date))
            if st.button("Delete record"):
                delete_daily_record(phone, by_date[chosen])
                st.rerun()

# -------------------------
# 3) Rules
# -------------------------
def _rule_input(label: str, name: str, value, step=0.1, whole: bool = False):
    if whole:
        return st.number_input(label, min_value=0, value=value, step=1, key=f"rule_{name}")
    return st.number_input(label, value=float(value), step=step, format="%.2f", key=f"rule_{name}")

def _clear_rule_inputs() -> None:
    for k in [k for k in st.session_state if str(k).startswith("rule_")]:
        st.session_state.pop(k, None)

with tabs[2]:
    st.subheader("Titration rules")
    st.caption("Changes apply to every suggestion as soon as they are saved.")

    b = config.basal_rules
    p = config.prandial_rules

    st.markdown("### 1. Initial split")
    c1, c2 = st.columns(2)
    with c1:
        tdd_factor = _rule_input("Total dose factor (U/kg)", "tdd_factor", config.tdd_factor)
    with c2:
        basal_ratio = _rule_input("Basal share (0.5 = 50%)", "basal_ratio", config.basal_ratio, step=0.05)

    st.markdown("### 2. Basal (fasting glucose)")
    c1, c2, c3 = st.columns(3)
    with c1:
        fbg_high = _rule_input("Very high, > (+6U)", "fbg_high_plus6", b.fbg_high_plus6)
        fbg_safe_min = _rule_input("Safe minimum, < (decrease)", "fbg_safe_min", b.fbg_safe_min)
    with c2:
        fbg_med = _rule_input("High, ≥ (+4U)", "fbg_med_plus4", b.fbg_med_plus4)
        fbg_safe_max = _rule_input("Safe maximum (reference)", "fbg_safe_max", b.fbg_safe_max)
    with c3:
        fbg_low = _rule_input("Mildly high, ≥ (+2U)", "fbg_low_plus2", b.fbg_low_plus2)
        basal_decr = _rule_input("Decrease by (U)", "basal_decr", int(b.basal_decr), whole=True)

    st.markdown("### 3. Prandial (staggered: next reading)")
    c1, c2, c3 = st.columns(3)
    with c1:
        bg_high = _rule_input("Very high, > (+4U)", "bg_high_plus4", p.bg_high_plus4)
        bg_safe_max = _rule_input("Safe maximum (reference)", "bg_safe_max", p.bg_safe_max)
    with c2:
        bg_med = _rule_input("High, ≥ (+2U)", "bg_med_plus2", p.bg_med_plus2)
        prandial_decr = _rule_input("Decrease by (U)", "prandial_decr", int(p.prandial_decr), whole=True)
    with c3:
        bg_safe_min = _rule_input("Safe minimum, < (decrease)", "bg_safe_min", p.bg_safe_min)

    edited = TitrationConfig.from_dict({
        "tdd_factor": tdd_factor,
        "basal_ratio": basal_ratio,
        "basal_rules": {
            "fbg_high_plus6": fbg_high,
            "fbg_med_plus4": fbg_med,
            "fbg_low_plus2": fbg_low,
            "fbg_safe_min": fbg_safe_min,
            "fbg_safe_max": fbg_safe_max,
            "basal_decr": int(basal_decr),
        },
        "prandial_rules": {
            "bg_high_plus4": bg_high,
            "bg_med_plus2": bg_med,
            "bg_safe_min": bg_safe_min,
            "bg_safe_max": bg_safe_max,
            "prandial_decr": int(prandial_decr),
        },
    })

    for problem in validate_config(edited):
        st.warning(problem)

    c_save, c_reset = st.columns(2)
    with c_save:
        if st.button("Save rules", type="primary", disabled=edited == config):
            try:
                save_config(edited)
            except InvalidConfigError as e:
                st.error(f"Rules not saved: {e}")
            else:
                st.rerun()
    with c_reset:
        if st.button("Restore default rules"):
            reset_config()
            _clear_rule_inputs()
            st.rerun()

# -------------------------
# 4) Export
# -------------------------
with tabs[3]:
    st.subheader("Export & backup")

    records = fetch_daily_records(phone)
    st.download_button(
        "Download history (CSV, opens in Excel)",
        data=frame_to_csv_bytes(records_to_frame(records)),
        file_name=export_filename("insulin_titration", "csv"),
        mime="text/csv",
        disabled=not records,
    )

    st.markdown("### Portable copy")
    st.caption("A JSON file with this patient's profile, history and the current rules. Load it on another computer to continue.")
    st.download_button(
        "Download snapshot (JSON)",
        data=snapshot_to_json(build_snapshot(phone)),
        file_name=export_filename("insulin_titration_snapshot", "json"),
        mime="application/json",
    )

    uploaded = st.file_uploader("Restore from snapshot", type=["json"])
    if uploaded is not None and st.button("Restore"):
        try:
            restored = restore_snapshot(uploaded.getvalue())
        except SnapshotError as e:
            st.error(str(e))
        else:
            # restored rules and doses replace whatever the widgets still hold
            _clear_rule_inputs()
            st.session_state.pop("form_user", None)
            st.session_state["restore_notice"] = restored
            st.rerun()
    if st.session_state.get("restore_notice"):
        st.success(f"Restored ✅ (patient {st.session_state.pop('restore_notice')}). Switch patient to open it if it is a different profile.")
