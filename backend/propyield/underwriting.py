"""
PropYield — Deal Underwriting Engine
═════════════════════════════════════
Closed-form buy-to-let metrics for a single property:
  • Mortgage payment (repayment or interest-only)
  • First-year interest from a vectorized amortization schedule
  • Gross / net yield, cash flow, ROI, DSCR, LTV
  • Human-readable working for every headline figure
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import numpy as np

from .errors import UnderwritingError


# ═══════════════════════════════════════════════════════════════
#  Data Models
# ═══════════════════════════════════════════════════════════════

@dataclass
class Assumptions:
    deposit_pct: float = 25.0
    apr: float = 5.5
    term_years: int = 25
    interest_only: bool = True
    voids_pct: float = 5.0
    maintenance_pct: float = 8.0
    management_pct: float = 10.0
    insurance_annual: float = 300.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Assumptions":
        """Build assumptions from a partial mapping, falling back to defaults."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_ASSUMPTIONS = Assumptions()


@dataclass
class DealKPIs:
    purchase_price: float
    deposit: float
    loan_amount: float
    monthly_rent: float
    annual_rent: float

    mortgage_payment_monthly: float
    voids_cost_monthly: float
    maintenance_cost_monthly: float
    management_cost_monthly: float
    insurance_cost_monthly: float
    total_costs_monthly: float

    annual_operating_costs: float
    annual_mortgage_interest: float
    noi: float
    annual_debt_service: float

    gross_yield_pct: float
    net_yield_pct: float
    cashflow_monthly: float
    cashflow_annual: float
    roi_pct: float
    dscr: float
    ltv_pct: float
    working: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def numeric(self) -> dict[str, float]:
        return {k: v for k, v in asdict(self).items() if isinstance(v, (int, float))}


# ═══════════════════════════════════════════════════════════════
#  Mortgage
# ═══════════════════════════════════════════════════════════════

def _require_finite(**values: float) -> None:
    for name, value in values.items():
        if value is None or not math.isfinite(value):
            raise UnderwritingError(f"{name} must be a finite number")


def monthly_mortgage_payment(
    loan: float, apr: float, term_years: float, interest_only: bool = False
) -> float:
    """
    Monthly payment for a loan of ``loan`` at ``apr`` percent.

    Repayment loans use ``P·r(1+r)^n / ((1+r)^n − 1)``; interest-only
    loans pay ``P·apr/12``. A 0% repayment loan repays ``P/n`` per month.
    """
    _require_finite(loan=loan, apr=apr, term_years=term_years)
    if loan < 0:
        raise UnderwritingError("Loan amount cannot be negative")
    if apr < 0:
        raise UnderwritingError("APR cannot be negative")
    if loan == 0:
        return 0.0
    if interest_only:
        return loan * apr / 100 / 12
    if term_years <= 0:
        raise UnderwritingError("term_years must be positive for a repayment loan")

    r = apr / 100 / 12
    n = term_years * 12
    if r == 0:
        return loan / n
    growth = (1 + r) ** n
    return loan * (r * growth) / (growth - 1)


def amortization_schedule(loan: float, apr: float, term_years: float, months: int | None = None) -> dict[str, np.ndarray]:
    """Opening balance, interest and principal for each month of a repayment loan."""
    payment = monthly_mortgage_payment(loan, apr, term_years, interest_only=False)
    n = int(round(term_years * 12))
    k = np.arange(min(months or n, n), dtype=float)
    r = apr / 100 / 12
    if r == 0:
        balance = loan - payment * k
    else:
        growth = (1 + r) ** k
        balance = loan * growth - payment * (growth - 1) / r
    interest = balance * r
    return {
        "balance": balance,
        "interest": interest,
        "principal": payment - interest,
    }


def annual_interest(loan: float, apr: float, term_years: float, interest_only: bool = False) -> float:
    """Interest paid over the first twelve months."""
    if loan == 0:
        return 0.0
    if interest_only:
        return monthly_mortgage_payment(loan, apr, term_years, interest_only=True) * 12
    schedule = amortization_schedule(loan, apr, term_years, months=12)
    return float(schedule["interest"].sum())


# ═══════════════════════════════════════════════════════════════
#  KPIs
# ═══════════════════════════════════════════════════════════════

def _money(value: float) -> str:
    if float(value).is_integer():
        return f"£{value:,.0f}"
    return f"£{value:,.2f}"


def _validate(price: float, monthly_rent: float, a: Assumptions) -> None:
    _require_finite(
        price=price,
        monthly_rent=monthly_rent,
        deposit_pct=a.deposit_pct,
        apr=a.apr,
        term_years=a.term_years,
        voids_pct=a.voids_pct,
        maintenance_pct=a.maintenance_pct,
        management_pct=a.management_pct,
        insurance_annual=a.insurance_annual,
    )
    if price <= 0:
        raise UnderwritingError("Purchase price must be greater than zero")
    if monthly_rent < 0:
        raise UnderwritingError("Monthly rent cannot be negative")
    if not 0 < a.deposit_pct <= 100:
        raise UnderwritingError("deposit_pct must be in (0, 100]")
    for name in ("voids_pct", "maintenance_pct", "management_pct", "insurance_annual", "term_years"):
        if getattr(a, name) < 0:
            raise UnderwritingError(f"{name} cannot be negative")


def calculate_kpis(price: float, monthly_rent: float, assumptions: Assumptions | None = None) -> DealKPIs:
    """Underwrite a deal. Pure: identical inputs give identical outputs."""
    a = assumptions or DEFAULT_ASSUMPTIONS
    _validate(price, monthly_rent, a)

    deposit = price * (a.deposit_pct / 100)
    loan = price - deposit
    mortgage = monthly_mortgage_payment(loan, a.apr, a.term_years, a.interest_only)
    interest = annual_interest(loan, a.apr, a.term_years, a.interest_only)

    annual_rent = monthly_rent * 12
    voids = monthly_rent * (a.voids_pct / 100)
    maintenance = monthly_rent * (a.maintenance_pct / 100)
    management = monthly_rent * (a.management_pct / 100)
    insurance = a.insurance_annual / 12
    opex_monthly = voids + maintenance + management + insurance
    total_costs = mortgage + opex_monthly

    annual_opex = opex_monthly * 12
    noi = annual_rent - annual_opex
    debt_service = mortgage * 12

    gross_yield = annual_rent / price * 100
    net_yield = (annual_rent - annual_opex - interest) / price * 100
    cashflow = monthly_rent - total_costs
    cashflow_annual = cashflow * 12
    roi = cashflow_annual / deposit * 100
    dscr = noi / debt_service if debt_service > 0 else 0.0

    if a.interest_only:
        mortgage_working = f"{_money(loan)} × {a.apr:g}% ÷ 12 = £{mortgage:.2f}/mo"
    else:
        mortgage_working = f"{_money(loan)} @ {a.apr:g}% over {a.term_years}y = £{mortgage:.2f}/mo"

    working = {
        "deposit": f"{_money(price)} × {a.deposit_pct:g}% = {_money(deposit)}",
        "loan": f"{_money(price)} - {_money(deposit)} = {_money(loan)}",
        "mortgage": mortgage_working,
        "opex": (
            f"Voids {a.voids_pct:g}% + Maint {a.maintenance_pct:g}% + "
            f"Mgmt {a.management_pct:g}% + Ins {_money(a.insurance_annual)}/yr"
        ),
        "gross_yield": f"({_money(annual_rent)} / {_money(price)}) × 100 = {gross_yield:.2f}%",
        "net_yield": (
            f"(({_money(annual_rent)} - £{annual_opex:.2f} OpEx - £{interest:.2f} Interest) "
            f"/ {_money(price)}) × 100 = {net_yield:.2f}%"
        ),
        "cashflow": f"{_money(monthly_rent)} - £{total_costs:.2f} = £{cashflow:.2f}/mo",
        "roi": f"(£{cashflow_annual:.2f} / {_money(deposit)}) × 100 = {roi:.2f}%",
        "dscr": (
            f"£{noi:.2f} NOI / £{debt_service:.2f} debt = {dscr:.2f}"
            if debt_service > 0
            else "No debt service (cash purchase)"
        ),
    }

    return DealKPIs(
        purchase_price=price,
        deposit=deposit,
        loan_amount=loan,
        monthly_rent=monthly_rent,
        annual_rent=annual_rent,
        mortgage_payment_monthly=mortgage,
        voids_cost_monthly=voids,
        maintenance_cost_monthly=maintenance,
        management_cost_monthly=management,
        insurance_cost_monthly=insurance,
        total_costs_monthly=total_costs,
        annual_operating_costs=annual_opex,
        annual_mortgage_interest=interest,
        noi=noi,
        annual_debt_service=debt_service,
        gross_yield_pct=gross_yield,
        net_yield_pct=net_yield,
        cashflow_monthly=cashflow,
        cashflow_annual=cashflow_annual,
        roi_pct=roi,
        dscr=dscr,
        ltv_pct=loan / price * 100,
        working=working,
    )


def investment_grade(gross_yield_pct: float) -> str:
    """Letter grade A–E from gross yield."""
    if gross_yield_pct >= 8:
        return "A"
    if gross_yield_pct >= 6:
        return "B"
    if gross_yield_pct >= 4:
        return "C"
    if gross_yield_pct >= 2:
        return "D"
    return "E"
