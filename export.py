# export.py
import json
import logging
from datetime import datetime, date
from numbers import Real
from typing import Any, Dict, List, Optional

import pandas as pd
import matplotlib.pyplot as plt

from titration import DOSE_FIELDS, READING_FIELDS, TitrationConfig, validate_config
from records import READING_LABELS, SUGGESTED_FIELDS, validate_phone, InvalidPhoneError
from storage import (
    RECORD_FIELDS,
    get_engine,
    get_profile,
    upsert_profile,
    fetch_daily_records,
    save_daily_record,
    load_config,
    save_config,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

COLUMNS = {
    "record_date": "Date",
    "fbg": "Fasting BG",
    "pre_lunch_bg": "Pre-lunch BG",
    "pre_dinner_bg": "Pre-dinner BG",
    "bedtime_bg": "Bedtime BG",
    "cur_breakfast": "Breakfast (current)",
    "cur_lunch": "Lunch (current)",
    "cur_dinner": "Dinner (current)",
    "cur_basal": "Basal (current)",
    "sug_breakfast": "Breakfast (suggested)",
    "sug_lunch": "Lunch (suggested)",
    "sug_dinner": "Dinner (suggested)",
    "sug_basal": "Basal (suggested)",
}


class SnapshotError(ValueError):
    pass


def records_to_frame(records: List[Dict]) -> pd.DataFrame:
    """History as a table, oldest date first, with readable column names."""
    df = pd.DataFrame(records, columns=list(COLUMNS))
    if df.empty:
        return df.rename(columns=COLUMNS)
    df["record_date"] = pd.to_datetime(df["record_date"]).dt.date
    df = df.sort_values("record_date").reset_index(drop=True)
    return df.rename(columns=COLUMNS)


def frame_to_csv_bytes(df: pd.DataFrame) -> bytes:
    # BOM so Excel picks up UTF-8
    return df.to_csv(index=False).encode("utf-8-sig")


def export_filename(prefix: str, ext: str, today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"{prefix}_{today.isoformat()}.{ext}"


def glucose_trend_figure(records: List[Dict]):
    df = pd.DataFrame(records)
    fig, ax = plt.subplots(figsize=(8, 3.5))
    if not df.empty:
        df["record_date"] = pd.to_datetime(df["record_date"])
        df = df.sort_values("record_date")
        for field, label in READING_LABELS.items():
            ax.plot(df["record_date"], df[field], marker="o", label=label)
        ax.legend(loc="upper left", fontsize="small")
    ax.set_ylabel("mmol/L")
    ax.tick_params(axis="x", labelrotation=30)
    fig.tight_layout()
    return fig


# -------------------------
# Snapshot (backup / portable copy)
# -------------------------
def _jsonable(d: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in d.items():
        out[k] = v.isoformat() if isinstance(v, (datetime, date)) else v
    return out


def build_snapshot(phone: str) -> Dict[str, Any]:
    profile = get_profile(phone)
    if profile is None:
        raise SnapshotError(f"No profile for {phone}.")
    history = [
        _jsonable({"record_date": r["record_date"], **{k: r[k] for k in RECORD_FIELDS}})
        for r in fetch_daily_records(phone)
    ]
    return {
        "version": SNAPSHOT_VERSION,
        "exported_at": datetime.now().isoformat(timespec="seconds"),
        "profile": _jsonable(profile),
        "history": history,
        "config": load_config().to_dict(),
    }


def snapshot_to_json(snapshot: Dict[str, Any]) -> bytes:
    return json.dumps(snapshot, ensure_ascii=False, indent=2).encode("utf-8")


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _parse_record(r: Any) -> Dict[str, Any]:
    if not isinstance(r, dict) or not isinstance(r.get("record_date"), str):
        raise SnapshotError(f"History entry is malformed: {r!r}")
    rec: Dict[str, Any] = {}
    for k in READING_FIELDS:
        v = r.get(k)
        if v is not None and (isinstance(v, bool) or not isinstance(v, Real)):
            raise SnapshotError(f"History entry {r['record_date']}: {k} must be a number.")
        rec[k] = v
    for k in DOSE_FIELDS + SUGGESTED_FIELDS:
        if not _is_int(r.get(k)):
            raise SnapshotError(f"History entry {r['record_date']}: {k} must be a whole number of units.")
        rec[k] = r[k]
    try:
        rec["record_date"] = date.fromisoformat(r["record_date"])
    except ValueError as e:
        raise SnapshotError(f"History entry has a bad date: {e}") from e
    return rec


def restore_snapshot(payload: Any) -> str:
    """
    Loads a snapshot (dict, JSON str or bytes) into the store.
    Everything is checked before anything is written, and the writes share
    one transaction. Records for the same dates are overwritten.
    Returns the profile phone.
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise SnapshotError(f"Not a valid JSON snapshot: {e}") from e
    if not isinstance(payload, dict) or not isinstance(payload.get("profile"), dict):
        raise SnapshotError("Snapshot has no profile.")
    version = payload.get("version", SNAPSHOT_VERSION)
    if not _is_int(version) or version > SNAPSHOT_VERSION:
        raise SnapshotError(f"Unsupported snapshot version {version!r}.")

    profile = payload["profile"]
    if not isinstance(profile.get("phone"), str):
        raise SnapshotError("Snapshot profile has no phone number.")
    try:
        phone = validate_phone(profile["phone"])
    except InvalidPhoneError as e:
        raise SnapshotError(f"Snapshot profile: {e}") from e

    raw_config = payload.get("config")
    if raw_config is not None and not isinstance(raw_config, dict):
        raise SnapshotError("Snapshot config must be an object.")
    history = payload.get("history") or []
    if not isinstance(history, list):
        raise SnapshotError("Snapshot history must be a list.")

    try:
        config = TitrationConfig.from_dict(raw_config)
        created_at = profile.get("created_at")
        created_at = datetime.fromisoformat(created_at) if created_at else None
    except (AttributeError, TypeError, ValueError) as e:
        raise SnapshotError(f"Snapshot is malformed: {e}") from e
    if raw_config is not None:
        problems = validate_config(config)
        if problems:
            raise SnapshotError(f"Snapshot config is invalid: {'; '.join(problems)}")

    records = [_parse_record(r) for r in history]

    with get_engine().begin() as conn:
        if raw_config is not None:
            save_config(config, conn=conn)
        upsert_profile(phone, {
            "full_name": profile.get("full_name"),
            "weight_kg": profile.get("weight_kg"),
            "total_dose": profile.get("total_dose"),
            "basal_dose": profile.get("basal_dose"),
            "breakfast_dose": profile.get("breakfast_dose"),
            "lunch_dose": profile.get("lunch_dose"),
            "dinner_dose": profile.get("dinner_dose"),
            "created_at": created_at,
        }, conn=conn)
        for rec in records:
            save_daily_record(phone, rec, replace=True, conn=conn)

    logger.info("Restored snapshot: %d records", len(records))
    return phone
