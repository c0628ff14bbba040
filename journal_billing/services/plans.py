from datetime import datetime
from decimal import Decimal
from typing import Optional

from flask import current_app

from journal_billing.extensions import db
from journal_billing.models import Plan
from journal_billing.models.plan import (
    OPERATION_CHARGE_ONLY,
    OPERATION_CHARGE_AND_TOKENIZE,
    OPERATION_TOKENIZE_ONLY,
    PERIOD_LIFETIME,
    PERIOD_MONTH,
    PERIOD_YEAR,
)
from journal_billing.utils.helpers import add_months

# Monthly starts with a free month: the first page only stores a card token.
DEFAULT_PLANS = (
    {
        "id": "monthly",
        "name": "Trading Journal Monthly",
        "amount": Decimal("0.00"),
        "renewal_amount": Decimal("99.00"),
        "operation": OPERATION_TOKENIZE_ONLY,
        "period": PERIOD_MONTH,
        "trial_months": 1,
    },
    {
        "id": "annual",
        "name": "Trading Journal Annual",
        "amount": Decimal("899.00"),
        "renewal_amount": Decimal("899.00"),
        "operation": OPERATION_CHARGE_AND_TOKENIZE,
        "period": PERIOD_YEAR,
        "trial_months": 0,
    },
    {
        "id": "vip",
        "name": "Trading Journal VIP (lifetime)",
        "amount": Decimal("3499.00"),
        "renewal_amount": None,
        "operation": OPERATION_CHARGE_ONLY,
        "period": PERIOD_LIFETIME,
        "trial_months": 0,
    },
)

_PERIOD_MONTHS = {PERIOD_MONTH: 1, PERIOD_YEAR: 12}


def get_plan(plan_id: Optional[str], active_only: bool = True) -> Optional[Plan]:
    if not plan_id:
        return None
    plan = db.session.get(Plan, str(plan_id).strip().lower())
    if plan is None or (active_only and not plan.is_active):
        return None
    return plan


def seed_default_plans(currency: Optional[str] = None) -> int:
    """Insert or refresh the default plans. Returns the number of rows touched."""
    currency = currency or current_app.config.get("PAYMENT_CURRENCY", "ILS")
    touched = 0
    for spec in DEFAULT_PLANS:
        plan = db.session.get(Plan, spec["id"])
        if plan is None:
            plan = Plan(id=spec["id"])
            db.session.add(plan)
        for key, value in spec.items():
            setattr(plan, key, value)
        plan.currency = currency
        plan.is_active = True
        touched += 1
    db.session.commit()
    return touched


def period_end(plan: Plan, start: datetime) -> Optional[datetime]:
    """End of one billing period from `start`; None for lifetime plans."""
    months = _PERIOD_MONTHS.get(plan.period)
    if months is None:
        return None
    return add_months(start, months)


def trial_end(plan: Plan, start: datetime) -> datetime:
    return add_months(start, plan.trial_months or 1)
