"""Default cancellation policies (percentages are customer / provider / platform)"""

from decimal import Decimal

DEFAULT_POLICIES = [
    {
        "reason_key": "customer_no_show",
        "reason_title": "Customer No Show",
        "reason_description": "Customer failed to attend the scheduled appointment",
        "percentages": (0, 100, 0),
        "requires_explanation": True,
        "conditions": [("booking_status", "in_progress")],
    },
    {
        "reason_key": "customer_early_cancel",
        "reason_title": "Customer Early Cancellation",
        "reason_description": "Customer requested cancellation with advance notice",
        "percentages": (100, 0, 0),
        "requires_explanation": False,
        "conditions": [("booking_status", "confirmed"), ("min_time_before_start", "720")],
    },
    {
        "reason_key": "customer_late_cancel",
        "reason_title": "Customer Late Cancellation",
        "reason_description": "Customer requested cancellation with short notice",
        "percentages": (50, 0, 50),
        "requires_explanation": False,
        "conditions": [("booking_status", "confirmed"), ("max_time_before_start", "720")],
    },
    {
        "reason_key": "provider_cancel",
        "reason_title": "Provider Cancellation",
        "reason_description": "Provider cancelled the appointment",
        "percentages": (100, 0, 0),
        "requires_explanation": True,
        # confirmed: before the appointment; in_progress: during the session
        "conditions": [("booking_status", "confirmed"), ("booking_status", "in_progress")],
    },
]


def seed_default_policies(db) -> int:
    """Insert any missing default policy; returns how many were added"""
    from ...models import CancellationPolicy, CancellationPolicyCondition

    added = 0
    for entry in DEFAULT_POLICIES:
        if db.query(CancellationPolicy).filter(CancellationPolicy.reason_key == entry["reason_key"]).first():
            continue
        customer, provider, platform = (Decimal(p) for p in entry["percentages"])
        policy = CancellationPolicy(
            reason_key=entry["reason_key"],
            reason_title=entry["reason_title"],
            reason_description=entry["reason_description"],
            customer_refund_percentage=customer,
            provider_earnings_percentage=provider,
            platform_fee_percentage=platform,
            requires_explanation=entry["requires_explanation"],
            conditions=[
                CancellationPolicyCondition(condition_type=kind, condition_value=value)
                for kind, value in entry["conditions"]
            ],
        )
        db.add(policy)
        added += 1
    db.commit()
    return added
