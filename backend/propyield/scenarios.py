"""
What-if scenarios for single deals and whole portfolios.

A scenario shifts the deal inputs (rate in basis points, rent by a
percentage, void and maintenance rates by percentage points, value by a
percentage), re-runs the underwriting formulas and reports the deltas plus
threshold risk flags.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from .underwriting import Assumptions, DealKPIs, calculate_kpis

logger = logging.getLogger(__name__)

DSCR_FLOOR = 1.0
YIELD_FLOOR_PCT = 5.0
STRESS_CASHFLOW_DROP = -50_000.0

FLAG_LOW_DSCR = "DSCR below 1.0 - rent does not cover debt service"
FLAG_NEGATIVE_CASHFLOW = "Negative monthly cash flow"
FLAG_LOW_YIELD = "Yield below 5%"
FLAG_STRESS = "Annual cash flow falls by more than £50,000"


@dataclass
class ScenarioParameters:
    name: str = "Custom scenario"
    interest_rate_change_bps: float = 0.0
    rent_change_pct: float = 0.0
    void_rate_change_pct: float = 0.0
    maintenance_change_pct: float = 0.0
    property_value_change_pct: float = 0.0


@dataclass
class Deal:
    price: float
    monthly_rent: float
    assumptions: Assumptions = field(default_factory=Assumptions)
    listing_id: int | None = None


@dataclass
class DealScenarioResult:
    scenario_name: str
    parameters: ScenarioParameters
    baseline: DealKPIs
    scenario: DealKPIs
    current_value: float
    delta: dict[str, float]
    risk_flags: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PortfolioMetrics:
    total_value: float = 0.0
    total_equity: float = 0.0
    total_debt: float = 0.0
    monthly_income: float = 0.0
    monthly_expenses: float = 0.0
    monthly_cashflow: float = 0.0
    annual_cashflow: float = 0.0
    portfolio_yield: float = 0.0
    portfolio_roi: float = 0.0
    avg_dscr: float = 0.0
    leveraged_count: int = 0
    properties_count: int = 0


@dataclass
class PortfolioScenarioResult:
    scenario_name: str
    parameters: ScenarioParameters
    baseline_metrics: PortfolioMetrics
    scenario_metrics: PortfolioMetrics
    delta: dict[str, float]
    risk_flags: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


UK_SCENARIOS: list[ScenarioParameters] = [
    ScenarioParameters(name="Interest Rate Shock (+2%)", interest_rate_change_bps=200),
    ScenarioParameters(name="Rental Market Softening (-10%)", rent_change_pct=-10),
    ScenarioParameters(name="Increased Maintenance (EPC compliance)", maintenance_change_pct=3),
    ScenarioParameters(
        name="Perfect Storm (rates +1.5%, rent -5%, voids +2%)",
        interest_rate_change_bps=150,
        rent_change_pct=-5,
        void_rate_change_pct=2,
    ),
    ScenarioParameters(
        name="Market Recovery (rates -1%, rent +5%, value +8%)",
        interest_rate_change_bps=-100,
        rent_change_pct=5,
        property_value_change_pct=8,
    ),
    ScenarioParameters(name="High Void Scenario (+5%)", void_rate_change_pct=5),
]


# ── Single deal ───────────────────────────────────────────────────────────


def apply_scenario(deal: Deal, params: ScenarioParameters) -> Deal:
    """Return a copy of ``deal`` with the scenario deltas applied to its inputs."""
    a = deal.assumptions
    shifted = replace(
        a,
        apr=max(a.apr + params.interest_rate_change_bps / 100, 0.0),
        voids_pct=max(a.voids_pct + params.void_rate_change_pct, 0.0),
        maintenance_pct=max(a.maintenance_pct + params.maintenance_change_pct, 0.0),
    )
    return replace(
        deal,
        monthly_rent=deal.monthly_rent * (1 + params.rent_change_pct / 100),
        assumptions=shifted,
    )


def _revalue(kpis: DealKPIs, value: float) -> DealKPIs:
    """Yields measured against a changed market value; the loan is unchanged."""
    if value == kpis.purchase_price:
        return kpis
    annual_opex = kpis.annual_operating_costs
    return replace(
        kpis,
        gross_yield_pct=kpis.annual_rent / value * 100,
        net_yield_pct=(kpis.annual_rent - annual_opex - kpis.annual_mortgage_interest) / value * 100,
        ltv_pct=kpis.loan_amount / value * 100,
    )


def deal_risk_flags(kpis: DealKPIs) -> list[str]:
    flags: list[str] = []
    if kpis.annual_debt_service > 0 and kpis.dscr < DSCR_FLOOR:
        flags.append(FLAG_LOW_DSCR)
    if kpis.cashflow_monthly < 0:
        flags.append(FLAG_NEGATIVE_CASHFLOW)
    if kpis.gross_yield_pct < YIELD_FLOOR_PCT:
        flags.append(FLAG_LOW_YIELD)
    return flags


def run_deal_scenario(deal: Deal, params: ScenarioParameters) -> DealScenarioResult:
    baseline = calculate_kpis(deal.price, deal.monthly_rent, deal.assumptions)
    shifted = apply_scenario(deal, params)
    current_value = deal.price * (1 + params.property_value_change_pct / 100)
    if current_value <= 0:
        raise ValueError("property_value_change_pct must leave a positive value")
    scenario = _revalue(
        calculate_kpis(shifted.price, shifted.monthly_rent, shifted.assumptions),
        current_value,
    )

    base_numbers = baseline.numeric()
    delta = {
        key: value - base_numbers[key]
        for key, value in scenario.numeric().items()
    }
    return DealScenarioResult(
        scenario_name=params.name,
        parameters=params,
        baseline=baseline,
        scenario=scenario,
        current_value=current_value,
        delta=delta,
        risk_flags=deal_risk_flags(scenario),
    )


# ── Portfolio ─────────────────────────────────────────────────────────────


def portfolio_metrics(kpis_list: list[DealKPIs], values: list[float] | None = None) -> PortfolioMetrics:
    """Aggregate underwritten deals. ``values`` overrides each deal's market value."""
    m = PortfolioMetrics(properties_count=len(kpis_list))
    total_dscr = 0.0
    annual_rent = 0.0
    for i, kpis in enumerate(kpis_list):
        m.total_value += values[i] if values else kpis.purchase_price
        m.total_equity += kpis.deposit
        m.total_debt += kpis.loan_amount
        m.monthly_income += kpis.monthly_rent
        m.monthly_expenses += kpis.total_costs_monthly
        m.monthly_cashflow += kpis.cashflow_monthly
        annual_rent += kpis.annual_rent
        if kpis.annual_debt_service > 0:
            total_dscr += kpis.dscr
            m.leveraged_count += 1

    m.annual_cashflow = m.monthly_cashflow * 12
    m.portfolio_yield = annual_rent / m.total_value * 100 if m.total_value > 0 else 0.0
    m.portfolio_roi = m.annual_cashflow / m.total_equity * 100 if m.total_equity > 0 else 0.0
    m.avg_dscr = total_dscr / m.leveraged_count if m.leveraged_count else 0.0
    return m


def run_portfolio_scenario(deals: list[Deal], params: ScenarioParameters) -> PortfolioScenarioResult:
    if not deals:
        raise ValueError("Portfolio must contain at least one deal")

    baseline_kpis = [calculate_kpis(d.price, d.monthly_rent, d.assumptions) for d in deals]
    shifted = [apply_scenario(d, params) for d in deals]
    scenario_kpis = [calculate_kpis(d.price, d.monthly_rent, d.assumptions) for d in shifted]
    values = [d.price * (1 + params.property_value_change_pct / 100) for d in deals]

    baseline = portfolio_metrics(baseline_kpis)
    scenario = portfolio_metrics(scenario_kpis, values)
    delta = {
        "monthly_cashflow": scenario.monthly_cashflow - baseline.monthly_cashflow,
        "annual_cashflow": scenario.annual_cashflow - baseline.annual_cashflow,
        "portfolio_yield": scenario.portfolio_yield - baseline.portfolio_yield,
        "portfolio_roi": scenario.portfolio_roi - baseline.portfolio_roi,
        "avg_dscr": scenario.avg_dscr - baseline.avg_dscr,
    }

    flags: list[str] = []
    if scenario.leveraged_count and scenario.avg_dscr < DSCR_FLOOR:
        flags.append(FLAG_LOW_DSCR)
    if scenario.monthly_cashflow < 0:
        flags.append(FLAG_NEGATIVE_CASHFLOW)
    if scenario.portfolio_yield < YIELD_FLOOR_PCT:
        flags.append(FLAG_LOW_YIELD)
    if delta["annual_cashflow"] < STRESS_CASHFLOW_DROP:
        flags.append(FLAG_STRESS)

    logger.info(
        "Portfolio scenario '%s' over %d deals: Δcashflow=%.2f/yr, flags=%d",
        params.name, len(deals), delta["annual_cashflow"], len(flags),
    )
    return PortfolioScenarioResult(
        scenario_name=params.name,
        parameters=params,
        baseline_metrics=baseline,
        scenario_metrics=scenario,
        delta=delta,
        risk_flags=flags,
    )
