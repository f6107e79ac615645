OPERATOR_ROLES = ("SUPER_USER", "USER_ADMIN")
RESIDENT_ROLE = "USER_CASUAL"

DEFAULT_DUES_CONCEPTS = [
    {
        "key": "administracion",
        "label": "Administration",
        "description": "Building administration and management fee",
        "amount": 40.00,
        "sort_order": 1,
    },
    {
        "key": "mantenimiento",
        "label": "Maintenance",
        "description": "Common-area maintenance and repairs",
        "amount": 30.00,
        "sort_order": 2,
    },
    {
        "key": "seguridad",
        "label": "Security",
        "description": "Concierge and security staff",
        "amount": 20.00,
        "sort_order": 3,
    },
    {
        "key": "limpieza",
        "label": "Cleaning",
        "description": "Common-area cleaning",
        "amount": 10.00,
        "sort_order": 4,
    },
]

DEFAULT_DELINQUENCY_POLICY = {
    "name": "default",
    "due_day_of_month": 10,
    "grace_period_days": 5,
    "delinquency_threshold_days": 30,
    "penalty_schedule_type": "linear",
    "penalty_steps": [
        {"from_day": 1, "percent": 5},
        {"from_day": 11, "percent": 10},
        {"from_day": 21, "percent": 15},
        {"from_day": 31, "percent": 20},
    ],
    "linear_rate_percent": 5,
    "linear_interval_days": 10,
    "max_penalty_percent": 50,
    "penalty_requires_delinquency": False,
}

PENALTY_LINE_ITEM_KEY = "recargo_morosidad"
PENALTY_LINE_ITEM_LABEL = "Delinquency penalty"
