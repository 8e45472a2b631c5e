from app.business.pricing.calculator import (
    ChangePreview,
    ChangeType,
    EffectiveTiming,
    Limitation,
    PlanSnapshot,
    PricingValidationError,
    ProrationPreference,
    UsageSnapshot,
    classify_change,
    compute_limitations,
    compute_preview,
    quantize_money,
    remaining_fraction,
)

__all__ = [
    "ChangePreview",
    "ChangeType",
    "EffectiveTiming",
    "Limitation",
    "PlanSnapshot",
    "PricingValidationError",
    "ProrationPreference",
    "UsageSnapshot",
    "classify_change",
    "compute_limitations",
    "compute_preview",
    "quantize_money",
    "remaining_fraction",
]
