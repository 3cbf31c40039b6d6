# records.py
import re
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from titration import (
    DEFAULT_CONFIG,
    DOSE_FIELDS,
    READING_FIELDS,
    TitrationConfig,
    get_suggested_dose,
)

READING_LABELS = {
    "fbg": "Fasting",
    "pre_lunch_bg": "Pre-lunch",
    "pre_dinner_bg": "Pre-dinner",
    "bedtime_bg": "Bedtime",
}

SUGGESTED_FIELDS = ("sug_basal", "sug_breakfast", "sug_lunch", "sug_dinner")


class InvalidPhoneError(ValueError):
    pass


class MissingReadingsError(ValueError):
    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing glucose readings: {', '.join(self.missing)}")


def normalize_phone(phone: str) -> str:
    phone = (phone or "").strip()
    phone = re.sub(r"[^\d+]", "", phone)
    # keep a single leading +
    return phone[:1] + phone[1:].replace("+", "")


def validate_phone(phone: str) -> str:
    """Returns the normalized phone or raises InvalidPhoneError."""
    phone_n = normalize_phone(phone)
    digits = phone_n.lstrip("+")
    if not digits.isdigit() or not 7 <= len(digits) <= 15:
        raise InvalidPhoneError("Enter a valid phone number (7-15 digits, optional +country code).")
    return phone_n


def missing_readings(record: Mapping[str, Any]) -> List[str]:
    missing = []
    for k in READING_FIELDS:
        v = record.get(k)
        if v is None or v <= 0:
            missing.append(READING_LABELS[k])
    return missing


def build_daily_record(
    record_date: date,
    readings: Mapping[str, Optional[float]],
    doses: Mapping[str, Optional[int]],
    config: TitrationConfig = DEFAULT_CONFIG,
) -> Dict[str, Any]:
    """
    Full daily record ready to save: date, readings, current doses and the
    suggestions computed from them. All four readings are required.
    """
    missing = missing_readings(readings)
    if missing:
        raise MissingReadingsError(missing)

    record: Dict[str, Any] = {"record_date": record_date}
    for k in READING_FIELDS:
        record[k] = float(readings[k])
    for k in DOSE_FIELDS:
        record[k] = int(doses.get(k) or 0)

    sug = get_suggested_dose(record, config)
    record.update({
        "sug_basal": sug.basal,
        "sug_breakfast": sug.breakfast,
        "sug_lunch": sug.lunch,
        "sug_dinner": sug.dinner,
    })
    return record


def next_day_doses(record: Optional[Mapping[str, Any]]) -> Dict[str, int]:
    # Yesterday's suggestion is today's current dose
    if not record:
        return {k: 0 for k in DOSE_FIELDS}
    return {cur: int(record.get(sug) or 0) for cur, sug in zip(DOSE_FIELDS, SUGGESTED_FIELDS)}


def doses_from_initial(profile: Optional[Mapping[str, Any]]) -> Dict[str, int]:
    if not profile:
        return {k: 0 for k in DOSE_FIELDS}
    return {
        "cur_basal": int(profile.get("basal_dose") or 0),
        "cur_breakfast": int(profile.get("breakfast_dose") or 0),
        "cur_lunch": int(profile.get("lunch_dose") or 0),
        "cur_dinner": int(profile.get("dinner_dose") or 0),
    }
