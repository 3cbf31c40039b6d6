# config.py
# Default titration rules + settings (clinicians can tweak these easily)

TITRATION = {
    # Initial dose split
    "tdd_factor": 0.5,    # total daily dose, U/kg
    "basal_ratio": 0.5,   # share of TDD given as basal (0.5 = 50%)

    # Basal titration (driven by fasting glucose, mmol/L)
    "basal_rules": {
        "fbg_high_plus6": 10,   # > 10      -> +6U
        "fbg_med_plus4": 8,     # 8 - 10    -> +4U
        "fbg_low_plus2": 7,     # 7 - 7.9   -> +2U
        "fbg_safe_min": 4.4,    # < 4.4     -> -basal_decr
        "fbg_safe_max": 6.9,    # reference only
        "basal_decr": 2,
    },

    # Prandial titration (driven by the next pre-meal / bedtime glucose)
    "prandial_rules": {
        "bg_high_plus4": 10,    # > 10      -> +4U
        "bg_med_plus2": 7.9,    # 7.9 - 10  -> +2U
        "bg_safe_min": 4.4,     # < 4.4     -> -prandial_decr
        "bg_safe_max": 7.8,     # reference only
        "prandial_decr": 2,
    },
}

HISTORY = {
    # Records kept per user; older dates are pruned on save
    "max_records": 90,
}

GLUCOSE = {
    # Input bounds for the form (mmol/L)
    "input_max": 40.0,
    "input_step": 0.1,
    "hypo": 3.9,
}

DOSE = {
    "input_max": 200,
    "weight_max_kg": 400.0,
}

APP = {
    "title": "Insulin Titration Assistant",
    "disclaimer": (
        "Clinical support tool for use under clinician supervision. "
        "Suggested doses follow a fixed rule table and must be reviewed before use. "
        "If readings are concerning or the patient feels unwell, seek medical care."
    ),
}
