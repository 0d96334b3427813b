from __future__ import annotations

import pytest

from propyield.scenarios import (
    FLAG_LOW_DSCR,
    FLAG_LOW_YIELD,
    FLAG_NEGATIVE_CASHFLOW,
    FLAG_STRESS,
    UK_SCENARIOS,
    Deal,
    ScenarioParameters,
    apply_scenario,
    deal_risk_flags,
    portfolio_metrics,
    run_deal_scenario,
    run_portfolio_scenario,
)
from propyield.underwriting import Assumptions, calculate_kpis

LEVERAGED = Deal(price=200_000, monthly_rent=1_000, assumptions=Assumptions(deposit_pct=25, apr=5.5))
CASH = Deal(price=200_000, monthly_rent=1_000, assumptions=Assumptions(deposit_pct=100, apr=5.5))

RATE_SHOCK = ScenarioParameters(name="Rate shock", interest_rate_change_bps=200)


def test_zero_scenario_has_zero_deltas() -> None:
    result = run_deal_scenario(LEVERAGED, ScenarioParameters())

    assert result.delta
    assert all(value == 0 for value in result.delta.values())
    assert result.risk_flags == deal_risk_flags(result.baseline) == []


def test_apply_scenario_shifts_inputs() -> None:
    shifted = apply_scenario(
        LEVERAGED,
        ScenarioParameters(
            interest_rate_change_bps=150,
            rent_change_pct=-10,
            void_rate_change_pct=2,
            maintenance_change_pct=3,
        ),
    )

    assert shifted.assumptions.apr == pytest.approx(7.0)
    assert shifted.monthly_rent == pytest.approx(900)
    assert shifted.assumptions.voids_pct == pytest.approx(7.0)
    assert shifted.assumptions.maintenance_pct == pytest.approx(11.0)
    assert LEVERAGED.assumptions.apr == 5.5


def test_rate_cut_never_goes_below_zero() -> None:
    shifted = apply_scenario(LEVERAGED, ScenarioParameters(interest_rate_change_bps=-1_000))

    assert shifted.assumptions.apr == 0.0


def test_rate_shock_flags_dscr_and_cashflow() -> None:
    result = run_deal_scenario(LEVERAGED, RATE_SHOCK)

    assert result.scenario.mortgage_payment_monthly == pytest.approx(937.5)
    assert result.delta["mortgage_payment_monthly"] == pytest.approx(250)
    assert result.delta["cashflow_monthly"] == pytest.approx(-250)
    assert result.scenario.dscr == pytest.approx(8_940 / 11_250)
    assert FLAG_LOW_DSCR in result.risk_flags
    assert FLAG_NEGATIVE_CASHFLOW in result.risk_flags
    assert FLAG_LOW_YIELD not in result.risk_flags


def test_rent_drop_reduces_rent_and_yield() -> None:
    result = run_deal_scenario(LEVERAGED, ScenarioParameters(rent_change_pct=-10))

    assert result.delta["monthly_rent"] == pytest.approx(-100)
    assert result.scenario.gross_yield_pct == pytest.approx(5.4)
    assert result.scenario.cashflow_monthly == pytest.approx(-19.5)


def test_value_change_rebases_yields_and_ltv() -> None:
    result = run_deal_scenario(LEVERAGED, ScenarioParameters(property_value_change_pct=8))

    assert result.current_value == pytest.approx(216_000)
    assert result.scenario.gross_yield_pct == pytest.approx(12_000 / 216_000 * 100)
    assert result.scenario.ltv_pct == pytest.approx(150_000 / 216_000 * 100)
    assert result.delta["cashflow_monthly"] == 0


def test_low_yield_flag() -> None:
    result = run_deal_scenario(Deal(price=300_000, monthly_rent=1_000), ScenarioParameters())

    assert FLAG_LOW_YIELD in result.risk_flags


def test_cash_purchase_never_gets_dscr_flag() -> None:
    result = run_deal_scenario(CASH, RATE_SHOCK)

    assert result.scenario.dscr == 0
    assert FLAG_LOW_DSCR not in result.risk_flags


def test_portfolio_metrics_average_dscr_over_leveraged_deals() -> None:
    kpis = [calculate_kpis(d.price, d.monthly_rent, d.assumptions) for d in (LEVERAGED, CASH)]

    m = portfolio_metrics(kpis)

    assert m.properties_count == 2
    assert m.leveraged_count == 1
    assert m.total_value == pytest.approx(400_000)
    assert m.total_debt == pytest.approx(150_000)
    assert m.total_equity == pytest.approx(250_000)
    assert m.monthly_cashflow == pytest.approx(802.5)
    assert m.annual_cashflow == pytest.approx(9_630)
    assert m.portfolio_yield == pytest.approx(6.0)
    assert m.portfolio_roi == pytest.approx(9_630 / 250_000 * 100)
    assert m.avg_dscr == pytest.approx(kpis[0].dscr)


def test_portfolio_rate_shock_only_moves_leveraged_cashflow() -> None:
    result = run_portfolio_scenario([LEVERAGED, CASH], RATE_SHOCK)

    assert result.delta["monthly_cashflow"] == pytest.approx(-250)
    assert result.delta["annual_cashflow"] == pytest.approx(-3_000)
    assert FLAG_LOW_DSCR in result.risk_flags
    assert FLAG_NEGATIVE_CASHFLOW not in result.risk_flags
    assert FLAG_STRESS not in result.risk_flags


def test_portfolio_stress_flag_on_large_cashflow_drop() -> None:
    big = Deal(price=5_000_000, monthly_rent=200_000)

    result = run_portfolio_scenario([big], ScenarioParameters(rent_change_pct=-50))

    assert result.delta["annual_cashflow"] == pytest.approx(-924_000)
    assert FLAG_STRESS in result.risk_flags


def test_portfolio_zero_scenario_is_neutral() -> None:
    result = run_portfolio_scenario([LEVERAGED, CASH], ScenarioParameters())

    assert all(v == 0 for v in result.delta.values())
    assert result.baseline_metrics == result.scenario_metrics


def test_empty_portfolio_is_rejected() -> None:
    with pytest.raises(ValueError):
        run_portfolio_scenario([], RATE_SHOCK)


def test_uk_presets() -> None:
    assert len(UK_SCENARIOS) == 6
    assert UK_SCENARIOS[0].interest_rate_change_bps == 200
    assert all(s.name for s in UK_SCENARIOS)
