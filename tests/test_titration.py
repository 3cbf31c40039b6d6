import dataclasses
import math

import pytest

from titration import (
    DEFAULT_CONFIG,
    DoseInput,
    DoseOutput,
    InvalidConfigError,
    InvalidWeightError,
    TitrationConfig,
    calculate_initial_dose,
    ensure_valid_config,
    get_suggested_dose,
    round_half_up,
    titrate_basal,
    titrate_prandial,
    validate_config,
)


def _in_safe_band(**overrides):
    # 6.0 mmol/L holds every slot under the default rules
    record = {
        "fbg": 6.0, "pre_lunch_bg": 6.0, "pre_dinner_bg": 6.0, "bedtime_bg": 6.0,
        "cur_basal": 20, "cur_breakfast": 10, "cur_lunch": 12, "cur_dinner": 14,
    }
    record.update(overrides)
    return record


# -------------------------
# Initial dose
# -------------------------
def test_initial_dose_golden_values():
    res = calculate_initial_dose(100, DEFAULT_CONFIG)
    assert res.weight == 100
    assert res.total_dose == 50
    assert res.basal_dose == 25
    assert (res.breakfast_dose, res.lunch_dose, res.dinner_dose) == (8, 8, 8)


def test_initial_dose_rounds_half_up():
    # basal 12.5 -> 13 (banker's rounding would give 12)
    res = calculate_initial_dose(50)
    assert res.total_dose == 25
    assert res.basal_dose == 13
    assert res.breakfast_dose == 4


def test_initial_dose_fields_rounded_independently():
    # 70 kg: total 35, basal 17.5 -> 18, meals 5.83 -> 6; 18 + 3*6 != 35
    res = calculate_initial_dose(70)
    assert res.total_dose == 35
    assert res.basal_dose == 18
    assert res.lunch_dose == 6
    assert res.basal_dose + 3 * res.lunch_dose != res.total_dose


def test_initial_dose_uses_config():
    cfg = dataclasses.replace(DEFAULT_CONFIG, tdd_factor=0.4, basal_ratio=0.4)
    res = calculate_initial_dose(100, cfg)
    assert res.total_dose == 40
    assert res.basal_dose == 16
    assert res.dinner_dose == 8


@pytest.mark.parametrize("weight", [0, -5, float("nan"), float("inf"), "70", None, True])
def test_initial_dose_rejects_invalid_weight(weight):
    with pytest.raises(InvalidWeightError):
        calculate_initial_dose(weight)


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4999) == 2
    assert round_half_up(8.333) == 8


# -------------------------
# Step functions
# -------------------------
@pytest.mark.parametrize("bg,expected", [
    (15.0, 26),
    (10.1, 26),
    (10.0, 24),   # not > 10, falls to the +4 tier
    (8.0, 24),
    (7.9, 22),
    (7.0, 22),
    (6.9, 20),
    (4.4, 20),
    (4.3, 18),
])
def test_titrate_basal_tiers(bg, expected):
    assert titrate_basal(bg, 20, DEFAULT_CONFIG.basal_rules) == expected


@pytest.mark.parametrize("bg,expected", [
    (12.0, 14),
    (10.0, 12),   # not > 10, falls to the +2 tier
    (7.9, 12),
    (7.8, 10),
    (4.4, 10),
    (3.0, 8),
])
def test_titrate_prandial_tiers(bg, expected):
    assert titrate_prandial(bg, 10, DEFAULT_CONFIG.prandial_rules) == expected


@pytest.mark.parametrize("bg", [None, 0, 0.0, -1.5])
def test_unmeasured_reading_holds_dose(bg):
    assert titrate_basal(bg, 7) == 7
    assert titrate_prandial(bg, 7) == 7


def test_decrement_is_clamped_at_zero():
    assert titrate_basal(4.0, 1, DEFAULT_CONFIG.basal_rules) == 0
    assert titrate_prandial(3.5, 0, DEFAULT_CONFIG.prandial_rules) == 0


def test_step_functions_are_monotonic_above_safe_floor():
    bgs = [round(4.4 + 0.1 * i, 1) for i in range(120)]
    basal = [titrate_basal(bg, 10) for bg in bgs]
    prandial = [titrate_prandial(bg, 10) for bg in bgs]
    assert basal == sorted(basal)
    assert prandial == sorted(prandial)


# -------------------------
# Suggested dose
# -------------------------
def test_missing_readings_hold_every_slot():
    assert get_suggested_dose({"cur_basal": 7}).basal == 7
    out = get_suggested_dose({"cur_basal": 7, "cur_breakfast": 5, "cur_lunch": 6, "cur_dinner": 4})
    assert out == DoseOutput(basal=7, breakfast=5, lunch=6, dinner=4)


def test_empty_record_gives_zero_doses():
    assert get_suggested_dose({}) == DoseOutput(0, 0, 0, 0)


@pytest.mark.parametrize("reading,slot", [
    ("fbg", "basal"),
    ("pre_lunch_bg", "breakfast"),
    ("pre_dinner_bg", "lunch"),
    ("bedtime_bg", "dinner"),
])
def test_each_reading_drives_exactly_one_slot(reading, slot):
    before = get_suggested_dose(_in_safe_band()).to_dict()
    after = get_suggested_dose(_in_safe_band(**{reading: 12.0})).to_dict()

    changed = {k for k in before if before[k] != after[k]}
    assert changed == {slot}
    assert after[slot] > before[slot]


def test_suggested_dose_accepts_dose_input():
    dose_input = DoseInput(fbg=9.0, pre_lunch_bg=3.0, cur_basal=20, cur_breakfast=10)
    out = get_suggested_dose(dose_input)
    assert out.basal == 24
    assert out.breakfast == 8
    assert out.lunch == 0 and out.dinner == 0


def test_config_hot_swap():
    record = _in_safe_band(fbg=6.8, pre_dinner_bg=7.5)
    strict = DEFAULT_CONFIG.with_basal_rules(fbg_low_plus2=6.5).with_prandial_rules(bg_med_plus2=7.0)

    default_out = get_suggested_dose(record, DEFAULT_CONFIG)
    strict_out = get_suggested_dose(record, strict)
    again = get_suggested_dose(record, DEFAULT_CONFIG)

    assert (default_out.basal, strict_out.basal) == (20, 22)
    assert (default_out.lunch, strict_out.lunch) == (12, 14)
    assert default_out.breakfast == strict_out.breakfast
    assert default_out.dinner == strict_out.dinner
    assert again == default_out


def test_safe_max_is_inert():
    cfg = DEFAULT_CONFIG.with_basal_rules(fbg_safe_max=5.0).with_prandial_rules(bg_safe_max=5.0)
    record = _in_safe_band(fbg=6.0, bedtime_bg=6.0)
    assert get_suggested_dose(record, cfg) == get_suggested_dose(record, DEFAULT_CONFIG)


# -------------------------
# Config
# -------------------------
def test_default_config_values():
    b = DEFAULT_CONFIG.basal_rules
    p = DEFAULT_CONFIG.prandial_rules
    assert (DEFAULT_CONFIG.tdd_factor, DEFAULT_CONFIG.basal_ratio) == (0.5, 0.5)
    assert (b.fbg_high_plus6, b.fbg_med_plus4, b.fbg_low_plus2) == (10, 8, 7)
    assert (b.fbg_safe_min, b.fbg_safe_max, b.basal_decr) == (4.4, 6.9, 2)
    assert (p.bg_high_plus4, p.bg_med_plus2) == (10, 7.9)
    assert (p.bg_safe_min, p.bg_safe_max, p.prandial_decr) == (4.4, 7.8, 2)


def test_config_is_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        DEFAULT_CONFIG.tdd_factor = 1.0
    DEFAULT_CONFIG.with_basal_rules(basal_decr=4)
    assert DEFAULT_CONFIG.basal_rules.basal_decr == 2


def test_config_from_partial_dict_falls_back_to_defaults():
    cfg = TitrationConfig.from_dict({"tdd_factor": 0.3, "basal_rules": {"basal_decr": 4, "unknown": 1}})
    assert cfg.tdd_factor == 0.3
    assert cfg.basal_ratio == 0.5
    assert cfg.basal_rules.basal_decr == 4
    assert cfg.basal_rules.fbg_high_plus6 == 10
    assert cfg.prandial_rules == DEFAULT_CONFIG.prandial_rules
    assert TitrationConfig.from_dict(None) == DEFAULT_CONFIG


def test_config_dict_roundtrip():
    cfg = DEFAULT_CONFIG.with_prandial_rules(bg_med_plus2=8.5)
    assert TitrationConfig.from_dict(cfg.to_dict()) == cfg


def test_validate_config():
    assert validate_config(DEFAULT_CONFIG) == []

    bad = dataclasses.replace(
        DEFAULT_CONFIG.with_basal_rules(fbg_low_plus2=9).with_prandial_rules(prandial_decr=-1),
        basal_ratio=1.5,
        tdd_factor=math.nan,
    )
    problems = validate_config(bad)
    assert len(problems) == 4
    with pytest.raises(InvalidConfigError) as exc:
        ensure_valid_config(bad)
    assert exc.value.problems == problems
