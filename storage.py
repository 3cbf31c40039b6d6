# storage.py
import os
import json
import logging
from contextlib import nullcontext
from datetime import datetime, date
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    create_engine, MetaData, Table, Column, UniqueConstraint,
    Integer, Float, String, Date, DateTime, Text
)
from sqlalchemy.sql import select, insert, update, delete
from sqlalchemy.pool import NullPool

from config import HISTORY
from titration import (
    DEFAULT_CONFIG,
    DOSE_FIELDS,
    READING_FIELDS,
    InitialDoseResult,
    TitrationConfig,
    ensure_valid_config,
)
from records import SUGGESTED_FIELDS

logger = logging.getLogger(__name__)

CONFIG_KEY = "titration_config"


class DuplicateRecordError(ValueError):
    def __init__(self, phone: str, record_date: date):
        self.phone = phone
        self.record_date = record_date
        super().__init__(f"A record for {record_date.isoformat()} already exists.")


class ProfileNotFoundError(LookupError):
    pass


def _get_db_url() -> str:
    url = os.getenv("DATABASE_URL", "").strip()
    if not url:
        try:
            import streamlit as st
            url = str(st.secrets.get("DATABASE_URL", "")).strip()
        except Exception:
            # no secrets.toml outside a Streamlit run
            pass
    return url

_engine = None

def get_engine():
    global _engine
    if _engine is None:
        db_url = _get_db_url()
        if db_url and not db_url.startswith("sqlite"):
            _engine = create_engine(db_url, pool_pre_ping=True, poolclass=NullPool)
        else:
            _engine = create_engine(db_url or "sqlite:///data.db", connect_args={"check_same_thread": False})
        logger.info("Using database %s", _engine.url.render_as_string(hide_password=True))
    return _engine

def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None

metadata = MetaData()

profiles = Table(
    "profiles", metadata,
    Column("phone", String(20), primary_key=True),
    Column("full_name", String(200), nullable=True),
    Column("weight_kg", Float, nullable=True),
    Column("total_dose", Integer, nullable=True),
    Column("basal_dose", Integer, nullable=True),
    Column("breakfast_dose", Integer, nullable=True),
    Column("lunch_dose", Integer, nullable=True),
    Column("dinner_dose", Integer, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

daily_records = Table(
    "daily_records", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_phone", String(20), nullable=False),
    Column("record_date", Date, nullable=False),
    # readings (mmol/L); NULL = not measured
    Column("fbg", Float, nullable=True),
    Column("pre_lunch_bg", Float, nullable=True),
    Column("pre_dinner_bg", Float, nullable=True),
    Column("bedtime_bg", Float, nullable=True),
    Column("cur_basal", Integer, nullable=False),
    Column("cur_breakfast", Integer, nullable=False),
    Column("cur_lunch", Integer, nullable=False),
    Column("cur_dinner", Integer, nullable=False),
    Column("sug_basal", Integer, nullable=False),
    Column("sug_breakfast", Integer, nullable=False),
    Column("sug_lunch", Integer, nullable=False),
    Column("sug_dinner", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("user_phone", "record_date", name="uq_daily_records_user_date"),
)

app_settings = Table(
    "app_settings", metadata,
    Column("key", String(80), primary_key=True),
    Column("value_json", Text, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

RECORD_FIELDS = READING_FIELDS + DOSE_FIELDS + SUGGESTED_FIELDS

def init_db() -> None:
    metadata.create_all(get_engine())

def _begin(conn=None):
    # join the caller's transaction when one is passed
    return nullcontext(conn) if conn is not None else get_engine().begin()

# -------------------------
# Profiles
# -------------------------
def get_profile(phone: str) -> Optional[Dict]:
    with get_engine().begin() as conn:
        row = conn.execute(
            select(profiles).where(profiles.c.phone == phone)
        ).fetchone()
    return dict(row._mapping) if row else None

def list_profiles() -> List[Dict]:
    with get_engine().begin() as conn:
        rows = conn.execute(
            select(profiles).order_by(profiles.c.created_at, profiles.c.phone)
        ).fetchall()
    return [dict(r._mapping) for r in rows]

def upsert_profile(phone: str, data: Dict, conn=None) -> None:
    now = datetime.now()
    payload = {
        k: data[k]
        for k in ("full_name", "weight_kg", "total_dose", "basal_dose", "breakfast_dose", "lunch_dose", "dinner_dose")
        if k in data
    }
    payload["updated_at"] = now

    with _begin(conn) as conn:
        exists = conn.execute(
            select(profiles.c.phone).where(profiles.c.phone == phone)
        ).fetchone()

        if exists:
            conn.execute(
                update(profiles).where(profiles.c.phone == phone).values(**payload)
            )
        else:
            payload["phone"] = phone
            payload["created_at"] = data.get("created_at") or now
            conn.execute(insert(profiles).values(**payload))

def save_initial_dose(phone: str, result: InitialDoseResult) -> None:
    if get_profile(phone) is None:
        raise ProfileNotFoundError(phone)
    upsert_profile(phone, {
        "weight_kg": result.weight,
        "total_dose": result.total_dose,
        "basal_dose": result.basal_dose,
        "breakfast_dose": result.breakfast_dose,
        "lunch_dose": result.lunch_dose,
        "dinner_dose": result.dinner_dose,
    })

def delete_profile(phone: str) -> None:
    with get_engine().begin() as conn:
        conn.execute(delete(daily_records).where(daily_records.c.user_phone == phone))
        conn.execute(delete(profiles).where(profiles.c.phone == phone))
    logger.info("Deleted profile and history for user ending %s", phone[-4:])

# -------------------------
# Daily records
# -------------------------
def _prune_history(conn, phone: str, keep: int) -> int:
    stale = conn.execute(
        select(daily_records.c.id)
        .where(daily_records.c.user_phone == phone)
        .order_by(daily_records.c.record_date.desc())
        .offset(keep)
    ).fetchall()
    ids = [r[0] for r in stale]
    if ids:
        conn.execute(delete(daily_records).where(daily_records.c.id.in_(ids)))
    return len(ids)

def save_daily_record(phone: str, record: Dict[str, Any], replace: bool = False, conn=None) -> None:
    record_date = record["record_date"]
    values = {k: record.get(k) for k in RECORD_FIELDS}

    with _begin(conn) as conn:
        existing = conn.execute(
            select(daily_records.c.id).where(
                daily_records.c.user_phone == phone,
                daily_records.c.record_date == record_date,
            )
        ).fetchone()

        if existing and not replace:
            raise DuplicateRecordError(phone, record_date)

        if existing:
            conn.execute(
                update(daily_records).where(daily_records.c.id == existing[0]).values(**values)
            )
        else:
            conn.execute(insert(daily_records).values(
                user_phone=phone,
                record_date=record_date,
                created_at=datetime.now(),
                **values
            ))

        pruned = _prune_history(conn, phone, HISTORY["max_records"])

    logger.info(
        "Saved record %s (replace=%s, pruned=%d)", record_date.isoformat(), bool(existing), pruned
    )

def fetch_daily_records(phone: str, limit: Optional[int] = None) -> List[Dict]:
    """Newest date first."""
    query = (
        select(daily_records)
        .where(daily_records.c.user_phone == phone)
        .order_by(daily_records.c.record_date.desc())
    )
    if limit:
        query = query.limit(limit)
    with get_engine().begin() as conn:
        rows = conn.execute(query).fetchall()
    return [dict(r._mapping) for r in rows]

def delete_daily_record(phone: str, record_id: int) -> bool:
    with get_engine().begin() as conn:
        res = conn.execute(
            delete(daily_records).where(
                daily_records.c.id == record_id,
                daily_records.c.user_phone == phone,
            )
        )
    return res.rowcount > 0

# -------------------------
# Titration config
# -------------------------
def load_config() -> TitrationConfig:
    with get_engine().begin() as conn:
        row = conn.execute(
            select(app_settings.c.value_json).where(app_settings.c.key == CONFIG_KEY)
        ).fetchone()
    if not row:
        return DEFAULT_CONFIG
    try:
        return TitrationConfig.from_dict(json.loads(row[0]))
    except (ValueError, TypeError):
        logger.warning("Stored titration config is unreadable; using defaults")
        return DEFAULT_CONFIG

def save_config(config: TitrationConfig, conn=None) -> None:
    ensure_valid_config(config)
    now = datetime.now()
    value_json = json.dumps(config.to_dict())

    with _begin(conn) as conn:
        exists = conn.execute(
            select(app_settings.c.key).where(app_settings.c.key == CONFIG_KEY)
        ).fetchone()
        if exists:
            conn.execute(
                update(app_settings).where(app_settings.c.key == CONFIG_KEY)
                .values(value_json=value_json, updated_at=now)
            )
        else:
            conn.execute(insert(app_settings).values(key=CONFIG_KEY, value_json=value_json, updated_at=now))
    logger.info("Titration config saved")

def reset_config() -> TitrationConfig:
    with get_engine().begin() as conn:
        conn.execute(delete(app_settings).where(app_settings.c.key == CONFIG_KEY))
    logger.info("Titration config reset to defaults")
    return DEFAULT_CONFIG
