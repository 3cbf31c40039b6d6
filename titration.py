# titration.py
import logging
import math
from dataclasses import dataclass, field, asdict, replace
from numbers import Real
from typing import Any, Dict, List, Mapping, Optional, Union

from config import TITRATION

logger = logging.getLogger(__name__)


class InvalidWeightError(ValueError):
    """Weight is not a positive, finite number of kilograms."""


class InvalidConfigError(ValueError):
    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid titration config")


# -------------------------
# Config
# -------------------------
@dataclass(frozen=True)
class BasalRules:
    fbg_high_plus6: float = TITRATION["basal_rules"]["fbg_high_plus6"]
    fbg_med_plus4: float = TITRATION["basal_rules"]["fbg_med_plus4"]
    fbg_low_plus2: float = TITRATION["basal_rules"]["fbg_low_plus2"]
    fbg_safe_min: float = TITRATION["basal_rules"]["fbg_safe_min"]
    fbg_safe_max: float = TITRATION["basal_rules"]["fbg_safe_max"]
    basal_decr: int = TITRATION["basal_rules"]["basal_decr"]


@dataclass(frozen=True)
class PrandialRules:
    bg_high_plus4: float = TITRATION["prandial_rules"]["bg_high_plus4"]
    bg_med_plus2: float = TITRATION["prandial_rules"]["bg_med_plus2"]
    bg_safe_min: float = TITRATION["prandial_rules"]["bg_safe_min"]
    bg_safe_max: float = TITRATION["prandial_rules"]["bg_safe_max"]
    prandial_decr: int = TITRATION["prandial_rules"]["prandial_decr"]


@dataclass(frozen=True)
class TitrationConfig:
    """
    Rule table for initial dosing and daily titration.

    Immutable: edit with dataclasses.replace() and hand the new value to the
    engine. fbg_safe_max / bg_safe_max are carried for reference only.
    """
    tdd_factor: float = TITRATION["tdd_factor"]
    basal_ratio: float = TITRATION["basal_ratio"]
    basal_rules: BasalRules = field(default_factory=BasalRules)
    prandial_rules: PrandialRules = field(default_factory=PrandialRules)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TitrationConfig":
        data = data or {}
        basal = {k: v for k, v in (data.get("basal_rules") or {}).items() if k in BasalRules.__dataclass_fields__}
        prandial = {k: v for k, v in (data.get("prandial_rules") or {}).items() if k in PrandialRules.__dataclass_fields__}
        return cls(
            tdd_factor=float(data.get("tdd_factor", TITRATION["tdd_factor"])),
            basal_ratio=float(data.get("basal_ratio", TITRATION["basal_ratio"])),
            basal_rules=BasalRules(**basal),
            prandial_rules=PrandialRules(**prandial),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_basal_rules(self, **changes) -> "TitrationConfig":
        return replace(self, basal_rules=replace(self.basal_rules, **changes))

    def with_prandial_rules(self, **changes) -> "TitrationConfig":
        return replace(self, prandial_rules=replace(self.prandial_rules, **changes))


DEFAULT_CONFIG = TitrationConfig()


def validate_config(config: TitrationConfig) -> List[str]:
    """
    Returns human-readable problems with the rule table (empty list if fine).
    The engine evaluates any table; this only flags tables that would not
    behave monotonically.
    """
    problems: List[str] = []
    b = config.basal_rules
    p = config.prandial_rules

    if not config.tdd_factor > 0:
        problems.append("TDD factor must be greater than 0 U/kg.")
    if not 0 <= config.basal_ratio <= 1:
        problems.append("Basal ratio must be between 0 and 1.")

    if not (b.fbg_high_plus6 >= b.fbg_med_plus4 >= b.fbg_low_plus2 > b.fbg_safe_min):
        problems.append("Basal thresholds must be ordered: +6 ≥ +4 ≥ +2 > safe minimum.")
    if not (p.bg_high_plus4 >= p.bg_med_plus2 > p.bg_safe_min):
        problems.append("Prandial thresholds must be ordered: +4 ≥ +2 > safe minimum.")

    if b.basal_decr < 0:
        problems.append("Basal decrement cannot be negative.")
    if p.prandial_decr < 0:
        problems.append("Prandial decrement cannot be negative.")

    return problems


def ensure_valid_config(config: TitrationConfig) -> TitrationConfig:
    problems = validate_config(config)
    if problems:
        raise InvalidConfigError(problems)
    return config


# -------------------------
# Initial dose
# -------------------------
@dataclass(frozen=True)
class InitialDoseResult:
    weight: float
    total_dose: int
    basal_dose: int
    breakfast_dose: int
    lunch_dose: int
    dinner_dose: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(x: float) -> int:
    # 12.5 -> 13 (builtin round() would give 12)
    return int(math.floor(x + 0.5))


def _check_weight(weight: Any) -> float:
    if isinstance(weight, bool) or not isinstance(weight, Real):
        raise InvalidWeightError(f"Weight must be a number, got {weight!r}.")
    w = float(weight)
    if not math.isfinite(w) or w <= 0:
        raise InvalidWeightError(f"Weight must be a positive number of kg, got {weight!r}.")
    return w


def calculate_initial_dose(weight: float, config: TitrationConfig = DEFAULT_CONFIG) -> InitialDoseResult:
    """
    Starting total daily dose and its basal / per-meal split from body weight.
    Each field is rounded on its own, so basal + 3 meals may not equal total.
    """
    w = _check_weight(weight)
    tdd = w * config.tdd_factor
    basal = tdd * config.basal_ratio
    each_prandial = (tdd - basal) / 3

    result = InitialDoseResult(
        weight=w,
        total_dose=round_half_up(tdd),
        basal_dose=round_half_up(basal),
        breakfast_dose=round_half_up(each_prandial),
        lunch_dose=round_half_up(each_prandial),
        dinner_dose=round_half_up(each_prandial),
    )
    logger.debug("Initial dose for %.1f kg: %s", w, result)
    return result


# -------------------------
# Daily titration
# -------------------------
READING_FIELDS = ("fbg", "pre_lunch_bg", "pre_dinner_bg", "bedtime_bg")
DOSE_FIELDS = ("cur_basal", "cur_breakfast", "cur_lunch", "cur_dinner")


@dataclass(frozen=True)
class DoseInput:
    # None = not measured
    fbg: Optional[float] = None
    pre_lunch_bg: Optional[float] = None
    pre_dinner_bg: Optional[float] = None
    bedtime_bg: Optional[float] = None

    cur_basal: int = 0
    cur_breakfast: int = 0
    cur_lunch: int = 0
    cur_dinner: int = 0

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DoseInput":
        kwargs: Dict[str, Any] = {}
        for k in READING_FIELDS:
            if record.get(k) is not None:
                kwargs[k] = float(record[k])
        for k in DOSE_FIELDS:
            if record.get(k) is not None:
                kwargs[k] = int(record[k])
        return cls(**kwargs)


@dataclass(frozen=True)
class DoseOutput:
    basal: int
    breakfast: int
    lunch: int
    dinner: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _not_measured(bg: Optional[float]) -> bool:
    return bg is None or bg <= 0


def titrate_basal(bg: Optional[float], current: int, rules: BasalRules = DEFAULT_CONFIG.basal_rules) -> int:
    if _not_measured(bg):
        return current
    if bg > rules.fbg_high_plus6:
        return current + 6
    if bg >= rules.fbg_med_plus4:
        return current + 4
    if bg >= rules.fbg_low_plus2:
        return current + 2
    if bg < rules.fbg_safe_min:
        return max(0, current - rules.basal_decr)
    return current


def titrate_prandial(bg: Optional[float], current: int, rules: PrandialRules = DEFAULT_CONFIG.prandial_rules) -> int:
    # Two raise tiers only (no +2 low tier as in basal)
    if _not_measured(bg):
        return current
    if bg > rules.bg_high_plus4:
        return current + 4
    if bg >= rules.bg_med_plus2:
        return current + 2
    if bg < rules.bg_safe_min:
        return max(0, current - rules.prandial_decr)
    return current


def get_suggested_dose(
    record: Union[DoseInput, Mapping[str, Any]],
    config: TitrationConfig = DEFAULT_CONFIG,
) -> DoseOutput:
    """
    Suggested doses for tomorrow.

    Each dose is adjusted by the reading taken after it acts:
      basal     <- fasting glucose
      breakfast <- pre-lunch glucose
      lunch     <- pre-dinner glucose
      dinner    <- bedtime glucose
    Missing readings hold the current dose.
    """
    dose_input = record if isinstance(record, DoseInput) else DoseInput.from_record(record)

    return DoseOutput(
        basal=titrate_basal(dose_input.fbg, dose_input.cur_basal, config.basal_rules),
        breakfast=titrate_prandial(dose_input.pre_lunch_bg, dose_input.cur_breakfast, config.prandial_rules),
        lunch=titrate_prandial(dose_input.pre_dinner_bg, dose_input.cur_lunch, config.prandial_rules),
        dinner=titrate_prandial(dose_input.bedtime_bg, dose_input.cur_dinner, config.prandial_rules),
    )
