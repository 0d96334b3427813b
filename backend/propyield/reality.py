"""
PropYield — Reality Mode
═════════════════════════
Regulation-adjusted returns: headline net yield is reduced by
  • landlord income tax (UK Section 24: mortgage interest is not
    deductible, a 20% basic-rate credit is given instead)
  • EPC retrofit cost to reach a target band, amortized over 7 years
  • local licensing fees
The EPC advisor estimates the retrofit package behind that cost.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import UnderwritingError

logger = logging.getLogger(__name__)

# ── UK income tax (2024/25) ───────────────────────────────────────────────

PERSONAL_ALLOWANCE = 12_570.0
ALLOWANCE_TAPER_START = 100_000.0
BASIC_BAND = 37_700.0
ADDITIONAL_THRESHOLD = 125_140.0
BASIC_RATE = 0.20
HIGHER_RATE = 0.40
ADDITIONAL_RATE = 0.45
SECTION_24_CREDIT_RATE = 0.20

# Flat landlord tax rates where finance costs remain deductible.
REGIONAL_TAX_RATES: dict[str, float] = {
    "US": 0.24,
    "CA": 0.26,
    "IE": 0.40,
    "DE": 0.30,
    "FR": 0.30,
    "ES": 0.19,
    "PT": 0.28,
    "AU": 0.325,
}

# ── EPC ───────────────────────────────────────────────────────────────────

EPC_ORDER = ["G", "F", "E", "D", "C", "B", "A"]
EPC_COST_PER_BAND_MIN = 3_000.0
EPC_COST_PER_BAND_MAX = 6_000.0
EPC_AMORT_YEARS = 7
EPC_YIELD_UPLIFT_PER_BAND = 0.3
EPC_MEASURES = [
    "Loft insulation (270mm+)",
    "Cavity wall insulation",
    "Double glazing upgrade",
    "Condensing boiler replacement",
    "LED lighting throughout",
    "Smart heating controls",
]


@dataclass
class RealityInputs:
    price: float
    monthly_rent: float
    region: str = "UK"
    ltv_pct: float = 75.0
    interest_rate_pct: float = 5.5
    opex_pct: float = 25.0
    vacancy_pct: float = 6.0
    other_income: float = 0.0
    current_epc: str | None = None
    target_epc: str = "C"
    epc_cost_override: float | None = None
    licensing_annual: float = 0.0
    apply_tax: bool = True
    apply_epc: bool = True
    apply_licensing: bool = True


@dataclass
class RealityResult:
    annual_rent: float
    operating_costs: float
    vacancy_cost: float
    net_before_interest: float
    mortgage_interest: float
    tax_due: float
    epc_annual_cost: float
    licensing_annual: float
    headline_cashflow_annual: float
    after_tax_cashflow_annual: float
    headline_net_yield_pct: float
    adjusted_net_yield_pct: float
    adjusted_roi_pct: float
    explain: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def uk_income_tax(income: float) -> float:
    """Income tax on ``income`` with the personal allowance taper above £100k."""
    if income <= 0:
        return 0.0
    taper = max(income - ALLOWANCE_TAPER_START, 0.0) / 2
    allowance = max(PERSONAL_ALLOWANCE - taper, 0.0)
    taxable = max(income - allowance, 0.0)

    basic = min(taxable, BASIC_BAND)
    higher = min(max(taxable - BASIC_BAND, 0.0), ADDITIONAL_THRESHOLD - BASIC_BAND)
    additional = max(taxable - ADDITIONAL_THRESHOLD, 0.0)
    return basic * BASIC_RATE + higher * HIGHER_RATE + additional * ADDITIONAL_RATE


def section_24_tax(rental_profit: float, finance_costs: float, other_income: float = 0.0) -> float:
    """
    Tax attributable to a rental profit under Section 24.

    Profit is taxed at the marginal rates on top of ``other_income``; finance
    costs earn a basic-rate credit capped at the profit. Never negative.
    """
    profit = max(rental_profit, 0.0)
    gross = uk_income_tax(other_income + profit) - uk_income_tax(other_income)
    credit = SECTION_24_CREDIT_RATE * min(max(finance_costs, 0.0), profit)
    return max(gross - credit, 0.0)


def epc_gap(current: str | None, target: str) -> int:
    if current is None:
        return 0
    current, target = current.upper(), target.upper()
    if current not in EPC_ORDER or target not in EPC_ORDER:
        raise UnderwritingError(f"EPC ratings must be one of {'/'.join(reversed(EPC_ORDER))}")
    return max(EPC_ORDER.index(target) - EPC_ORDER.index(current), 0)


def adjusted_metrics(inputs: RealityInputs) -> RealityResult:
    if inputs.price <= 0:
        raise UnderwritingError("Purchase price must be greater than zero")
    if inputs.monthly_rent < 0:
        raise UnderwritingError("Monthly rent cannot be negative")
    if not 0 <= inputs.ltv_pct < 100:
        raise UnderwritingError("ltv_pct must be in [0, 100)")
    region = inputs.region.upper()
    if region != "UK" and region not in REGIONAL_TAX_RATES:
        raise UnderwritingError(f"Unsupported region: {inputs.region}")

    annual_rent = inputs.monthly_rent * 12
    operating = annual_rent * inputs.opex_pct / 100
    vacancy = annual_rent * inputs.vacancy_pct / 100
    licensing = inputs.licensing_annual if inputs.apply_licensing else 0.0
    net_before_interest = annual_rent - operating - vacancy - licensing
    interest = inputs.price * inputs.ltv_pct / 100 * inputs.interest_rate_pct / 100

    tax = 0.0
    tax_method = "not applied"
    if inputs.apply_tax:
        if region == "UK":
            tax = section_24_tax(net_before_interest, interest, inputs.other_income)
            tax_method = "UK Section 24 (interest not deductible, 20% credit)"
        else:
            rate = REGIONAL_TAX_RATES[region]
            tax = max(net_before_interest - interest, 0.0) * rate
            tax_method = f"{region} flat {rate:.1%} (interest deductible)"

    gap = 0
    epc_cost = 0.0
    if inputs.apply_epc:
        gap = epc_gap(inputs.current_epc, inputs.target_epc)
        if inputs.epc_cost_override is not None:
            epc_cost = inputs.epc_cost_override if gap else 0.0
        else:
            epc_cost = gap * (EPC_COST_PER_BAND_MIN + EPC_COST_PER_BAND_MAX) / 2
    epc_annual = epc_cost / EPC_AMORT_YEARS

    headline = annual_rent - operating - vacancy - interest
    after_tax = net_before_interest - interest - tax - epc_annual
    equity = inputs.price * (1 - inputs.ltv_pct / 100)

    penalties = [
        name
        for name, amount in (("tax", tax), ("epc", epc_annual), ("licensing", licensing))
        if amount > 0
    ]
    return RealityResult(
        annual_rent=annual_rent,
        operating_costs=operating,
        vacancy_cost=vacancy,
        net_before_interest=net_before_interest,
        mortgage_interest=interest,
        tax_due=tax,
        epc_annual_cost=epc_annual,
        licensing_annual=licensing,
        headline_cashflow_annual=headline,
        after_tax_cashflow_annual=after_tax,
        headline_net_yield_pct=headline / inputs.price * 100,
        adjusted_net_yield_pct=after_tax / inputs.price * 100,
        adjusted_roi_pct=after_tax / equity * 100,
        explain={
            "region": region,
            "tax_method": tax_method,
            "tax_due": round(tax, 2),
            "epc_gap": gap,
            "epc_cost_total": round(epc_cost, 2),
            "epc_amort_years": EPC_AMORT_YEARS,
            "licensing_annual": round(licensing, 2),
            "penalties_applied": penalties,
        },
    )


def epc_advice(
    current: str,
    target: str = "C",
    price: float | None = None,
    estimated_rent: float | None = None,
) -> dict[str, Any]:
    """Fallback retrofit package for moving ``current`` up to ``target``."""
    gap = epc_gap(current, target)
    advice: dict[str, Any] = {
        "current_epc": current.upper(),
        "target_epc": target.upper(),
        "epc_gap": gap,
    }
    if gap == 0:
        advice.update({
            "message": "Property already meets or exceeds target EPC rating",
            "recommended_measures": [],
            "cost_estimate_min": 0.0,
            "cost_estimate_max": 0.0,
            "cost_estimate_median": 0.0,
            "amort_years": 0,
            "monthly_cost": 0,
            "expected_yield_uplift_pct": 0.0,
            "payback_years": 0,
        })
        return advice

    low = gap * EPC_COST_PER_BAND_MIN
    high = gap * EPC_COST_PER_BAND_MAX
    median = (low + high) / 2
    uplift = round(gap * EPC_YIELD_UPLIFT_PER_BAND, 2)

    payback: int | None = None
    if price:
        payback = round(median / (price * uplift / 100))
    elif estimated_rent:
        payback = round(median / (estimated_rent * 12 * uplift / 100))

    advice.update({
        "recommended_measures": EPC_MEASURES[: gap + 2],
        "cost_estimate_min": low,
        "cost_estimate_max": high,
        "cost_estimate_median": median,
        "amort_years": EPC_AMORT_YEARS,
        "monthly_cost": round(median / EPC_AMORT_YEARS / 12),
        "expected_yield_uplift_pct": uplift,
        "payback_years": payback,
    })
    logger.info("EPC advice %s→%s: median £%.0f", current, target, median)
    return advice
