"""
PropYield — Strategy Simulator
═══════════════════════════════
Ten-year projections for the common buy-to-let strategies:
  • LTR  — single long-term let
  • HMO  — house in multiple occupation
  • BRRR — buy, refurbish, refinance, rent
  • STR  — short-term / holiday let
Each preset is a set of default parameters; callers may override any of
them. The simulator reports cash-on-cash, DSCR, breakeven occupancy,
equity multiple and a 10-year IRR.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np

from .errors import IRRConvergenceError, UnderwritingError

logger = logging.getLogger(__name__)

PROJECTION_YEARS = 10
APPRECIATION_RATE = 0.03
DEFAULT_INTEREST_RATE = 5.5

_BASE_PARAMS: dict[str, Any] = {
    "ltv": 75.0,
    "capex_upfront": 0.0,
    "rent_uplift_pct": 0.0,
    "opex_pct": 25.0,
    "vacancy_pct": 6.0,
    "licensing_monthly": 0.0,
    "exit_year": PROJECTION_YEARS,
    "refi_year": None,
    "refi_ltv": None,
    "rent_increase_yr": 2.5,
}

STRATEGY_PRESETS: dict[str, dict[str, Any]] = {
    "LTR": {"label": "Long-Term Let", "params": {}},
    "HMO": {
        "label": "House in Multiple Occupation",
        "params": {
            "capex_upfront": 25_000.0,
            "rent_uplift_pct": 60.0,
            "opex_pct": 35.0,
            "vacancy_pct": 8.0,
            "licensing_monthly": 100.0,
        },
    },
    "BRRR": {
        "label": "Buy, Refurbish, Refinance, Rent",
        "params": {
            "capex_upfront": 30_000.0,
            "rent_uplift_pct": 15.0,
            "refi_year": 1,
            "refi_ltv": 75.0,
        },
    },
    "STR": {
        "label": "Short-Term Rental",
        "params": {
            "capex_upfront": 10_000.0,
            "rent_uplift_pct": 80.0,
            "opex_pct": 45.0,
            "vacancy_pct": 30.0,
            "licensing_monthly": 50.0,
        },
    },
}


@dataclass
class StrategyResult:
    strategy_key: str
    strategy_label: str
    assumptions: dict[str, Any]
    metrics: dict[str, Any]
    projection_10yr: list[dict[str, float]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════
#  IRR
# ═══════════════════════════════════════════════════════════════

def npv(rate: float, cashflows: np.ndarray) -> float:
    t = np.arange(len(cashflows), dtype=float)
    return float(np.sum(cashflows / (1.0 + rate) ** t))


def _npv_derivative(rate: float, cashflows: np.ndarray) -> float:
    t = np.arange(len(cashflows), dtype=float)
    return float(np.sum(-t * cashflows / (1.0 + rate) ** (t + 1)))


def irr(
    cashflows: list[float] | np.ndarray,
    guess: float = 0.1,
    tol: float = 1e-7,
    max_iter: int = 100,
) -> float:
    """
    Internal rate of return as a decimal (0.08 = 8%).

    Newton-Raphson from ``guess``; if that diverges or stalls, bisection on
    a bracketed sign change. Raises ``IRRConvergenceError`` when the series
    has no sign change or no root can be bracketed.
    """
    cf = np.asarray(cashflows, dtype=float)
    if cf.size < 2 or not np.all(np.isfinite(cf)):
        raise IRRConvergenceError("IRR needs at least two finite cash flows")
    if not (np.any(cf > 0) and np.any(cf < 0)):
        raise IRRConvergenceError("IRR undefined: cash flows never change sign")

    rate = guess
    for _ in range(max_iter):
        value = npv(rate, cf)
        if abs(value) < tol:
            return rate
        slope = _npv_derivative(rate, cf)
        if slope == 0 or not math.isfinite(slope):
            break
        step = rate - value / slope
        if not math.isfinite(step) or step <= -1.0:
            break
        if abs(step - rate) < tol:
            return step
        rate = step

    # Newton failed; fall back to bisection over a wide bracket.
    lo, hi = -0.9999, 10.0
    f_lo, f_hi = npv(lo, cf), npv(hi, cf)
    if f_lo * f_hi > 0:
        raise IRRConvergenceError("IRR did not converge: no root in [-99.99%, 1000%]")
    for _ in range(500):
        mid = (lo + hi) / 2
        f_mid = npv(mid, cf)
        if abs(f_mid) < tol or (hi - lo) / 2 < tol:
            return mid
        if f_lo * f_mid < 0:
            hi, f_hi = mid, f_mid
        else:
            lo, f_lo = mid, f_mid
    raise IRRConvergenceError("IRR did not converge within iteration limit")


# ═══════════════════════════════════════════════════════════════
#  Simulation
# ═══════════════════════════════════════════════════════════════

_YEAR_PARAMS = {"exit_year", "refi_year"}


def _coerce_override(key: str, value: Any) -> float | int:
    if isinstance(value, bool):
        raise UnderwritingError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise UnderwritingError(f"{key} must be a number") from exc
    if not math.isfinite(number):
        raise UnderwritingError(f"{key} must be finite")
    if key in _YEAR_PARAMS:
        if not number.is_integer():
            raise UnderwritingError(f"{key} must be a whole number of years")
        return int(number)
    return number


def resolve_params(strategy_key: str, overrides: dict[str, Any] | None = None) -> tuple[str, dict[str, Any]]:
    preset = STRATEGY_PRESETS.get(strategy_key.upper())
    if preset is None:
        raise KeyError(strategy_key)
    params = {**_BASE_PARAMS, **preset["params"]}
    for key, value in (overrides or {}).items():
        if key not in _BASE_PARAMS:
            raise UnderwritingError(f"Unknown strategy parameter: {key}")
        if value is not None:
            params[key] = _coerce_override(key, value)

    if not 0 <= params["ltv"] < 100:
        raise UnderwritingError("ltv must be in [0, 100)")
    if not 1 <= int(params["exit_year"]) <= PROJECTION_YEARS:
        raise UnderwritingError(f"exit_year must be between 1 and {PROJECTION_YEARS}")
    refi_year = params["refi_year"]
    if refi_year is not None and not 1 <= int(refi_year) <= PROJECTION_YEARS:
        raise UnderwritingError(f"refi_year must be between 1 and {PROJECTION_YEARS}")
    return preset["label"], params


def simulate_strategy(
    price: float,
    base_rent: float,
    strategy_key: str,
    overrides: dict[str, Any] | None = None,
    interest_rate: float = DEFAULT_INTEREST_RATE,
) -> StrategyResult:
    if price <= 0:
        raise UnderwritingError("Purchase price must be greater than zero")
    if base_rent <= 0:
        raise UnderwritingError("Monthly rent must be greater than zero")

    label, p = resolve_params(strategy_key, overrides)
    ltv = float(p["ltv"])
    loan = price * ltv / 100
    deposit = price - loan
    capex = float(p["capex_upfront"])
    initial_investment = deposit + capex
    if initial_investment <= 0:
        raise UnderwritingError("Initial investment must be greater than zero")

    adjusted_rent = base_rent * (1 + p["rent_uplift_pct"] / 100)
    annual_rent = adjusted_rent * 12
    opex_pct = float(p["opex_pct"])
    vacancy_pct = float(p["vacancy_pct"])
    licensing_annual = float(p["licensing_monthly"]) * 12

    operating = annual_rent * opex_pct / 100
    vacancy = annual_rent * vacancy_pct / 100
    annual_interest = loan * interest_rate / 100
    noi = annual_rent - operating - vacancy - licensing_annual
    annual_cashflow = noi - annual_interest

    dscr = noi / annual_interest if annual_interest > 0 else 0.0
    breakeven = (operating + vacancy + licensing_annual + annual_interest) / annual_rent * 100

    exit_year = int(p["exit_year"])
    refi_year = int(p["refi_year"]) if p["refi_year"] is not None else None
    refi_ltv = float(p["refi_ltv"] if p["refi_ltv"] is not None else ltv)

    value = price
    debt = loan
    cumulative = -initial_investment
    irr_flows = [-initial_investment]
    projection: list[dict[str, float]] = []

    for year in range(1, PROJECTION_YEARS + 1):
        value *= 1 + APPRECIATION_RATE
        cash_out = 0.0
        if refi_year == year:
            new_loan = value * refi_ltv / 100
            cash_out = new_loan - debt
            debt = new_loan

        year_rent = annual_rent * (1 + p["rent_increase_yr"] / 100) ** (year - 1)
        year_noi = year_rent * (1 - (opex_pct + vacancy_pct) / 100) - licensing_annual
        year_cashflow = year_noi - debt * interest_rate / 100
        cumulative += year_cashflow + cash_out

        if year <= exit_year:
            flow = year_cashflow + cash_out
            if year == exit_year:
                flow += value - debt
            irr_flows.append(flow)

        projection.append({
            "year": year,
            "property_value": round(value),
            "debt_balance": round(debt),
            "equity": round(value - debt),
            "annual_cashflow": round(year_cashflow),
            "cumulative_cashflow": round(cumulative),
        })

    warnings: list[str] = []
    try:
        irr_pct: float | None = round(irr(irr_flows) * 100, 2)
    except IRRConvergenceError as exc:
        logger.warning("Strategy %s: %s", strategy_key, exc)
        warnings.append(str(exc))
        irr_pct = None

    equity_multiple = sum(irr_flows[1:]) / initial_investment

    logger.info(
        "Strategy sim %s: price=%.0f IRR=%s DSCR=%.2f",
        strategy_key, price, irr_pct, dscr,
    )
    return StrategyResult(
        strategy_key=strategy_key.upper(),
        strategy_label=label,
        assumptions={
            "price": price,
            "ltv": ltv,
            "deposit": deposit,
            "capex_upfront": capex,
            "rent_monthly_base": base_rent,
            "rent_monthly_adjusted": adjusted_rent,
            "rent_uplift_pct": p["rent_uplift_pct"],
            "interest_rate": interest_rate,
            "opex_pct": opex_pct,
            "vacancy_pct": vacancy_pct,
            "licensing_monthly": p["licensing_monthly"],
            "rent_increase_yr": p["rent_increase_yr"],
            "exit_year": exit_year,
            "refi_year": refi_year,
            "refi_ltv": refi_ltv if refi_year else None,
        },
        metrics={
            "initial_investment": round(initial_investment),
            "monthly_cashflow": round(annual_cashflow / 12),
            "annual_cashflow": round(annual_cashflow),
            "dscr": round(dscr, 2),
            "cash_on_cash_return_pct": round(annual_cashflow / initial_investment * 100, 2),
            "irr_10yr_pct": irr_pct,
            "equity_multiple": round(equity_multiple, 2),
            "breakeven_occupancy_pct": round(breakeven, 2),
            "refi_year": refi_year,
            "exit_year": exit_year,
        },
        projection_10yr=projection,
        warnings=warnings,
    )
