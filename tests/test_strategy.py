from __future__ import annotations

import pytest

from propyield import strategy
from propyield.errors import IRRConvergenceError, UnderwritingError
from propyield.strategy import STRATEGY_PRESETS, irr, npv, resolve_params, simulate_strategy


def test_irr_single_period() -> None:
    assert irr([-100, 110]) == pytest.approx(0.10, abs=1e-6)


def test_irr_bond_like_series() -> None:
    assert irr([-1_000, 100, 100, 1_100]) == pytest.approx(0.10, abs=1e-6)


def test_irr_is_a_root_of_npv() -> None:
    flows = [-50_000, 2_000, 2_500, 3_000, 3_500, 70_000]
    rate = irr(flows)

    assert abs(npv(rate, flows)) < 1e-4


def test_irr_handles_very_high_returns() -> None:
    assert irr([-100, 1_000]) == pytest.approx(9.0, abs=1e-5)


def test_irr_negative_return() -> None:
    assert irr([-100, 50]) == pytest.approx(-0.5, abs=1e-6)


@pytest.mark.parametrize(
    "flows",
    [
        [100, 200, 300],
        [-100, -50, -10],
        [-100],
        [],
    ],
)
def test_irr_without_sign_change_does_not_converge(flows) -> None:
    with pytest.raises(IRRConvergenceError):
        irr(flows)


def test_irr_error_is_an_underwriting_error() -> None:
    assert issubclass(IRRConvergenceError, UnderwritingError)


def test_long_term_let_metrics() -> None:
    result = simulate_strategy(200_000, 1_000, "LTR")
    m = result.metrics

    assert result.strategy_key == "LTR"
    assert m["initial_investment"] == 50_000
    assert m["annual_cashflow"] == 30
    assert m["dscr"] == pytest.approx(1.0)
    assert m["breakeven_occupancy_pct"] == pytest.approx(99.75)
    assert m["irr_10yr_pct"] is not None
    assert len(result.projection_10yr) == 10
    assert result.projection_10yr[0]["property_value"] == 206_000
    assert result.warnings == []


def test_strategy_key_is_case_insensitive() -> None:
    assert simulate_strategy(200_000, 1_000, "hmo").strategy_key == "HMO"


def test_brrr_refinance_releases_equity() -> None:
    result = simulate_strategy(200_000, 1_000, "BRRR")

    assert result.projection_10yr[0]["debt_balance"] == 154_500
    assert result.metrics["refi_year"] == 1
    assert result.assumptions["refi_ltv"] == 75.0


def test_hmo_uplift_and_licensing() -> None:
    result = simulate_strategy(200_000, 1_000, "HMO")

    assert result.assumptions["rent_monthly_adjusted"] == pytest.approx(1_600)
    assert result.assumptions["licensing_monthly"] == 100.0
    assert result.metrics["initial_investment"] == 75_000


def test_cash_purchase_reports_zero_dscr() -> None:
    result = simulate_strategy(200_000, 1_000, "LTR", overrides={"ltv": 0})

    assert result.metrics["dscr"] == 0
    assert result.metrics["initial_investment"] == 200_000


def test_exit_year_override_shortens_irr_horizon() -> None:
    early = simulate_strategy(200_000, 1_000, "LTR", overrides={"exit_year": 5})

    assert early.metrics["exit_year"] == 5
    assert early.metrics["irr_10yr_pct"] is not None
    assert len(early.projection_10yr) == 10


def test_unknown_strategy() -> None:
    with pytest.raises(KeyError):
        simulate_strategy(200_000, 1_000, "FLIP")


def test_unknown_override_rejected() -> None:
    with pytest.raises(UnderwritingError):
        resolve_params("LTR", {"magic": 1})


@pytest.mark.parametrize("overrides", [{"ltv": 100}, {"exit_year": 0}, {"refi_year": 11}])
def test_out_of_range_overrides_rejected(overrides) -> None:
    with pytest.raises(UnderwritingError):
        resolve_params("LTR", overrides)


@pytest.mark.parametrize(
    "overrides",
    [
        {"ltv": "eighty"},
        {"ltv": True},
        {"opex_pct": [30]},
        {"vacancy_pct": float("nan")},
        {"exit_year": 5.5},
    ],
)
def test_malformed_override_values_rejected(overrides) -> None:
    with pytest.raises(UnderwritingError):
        resolve_params("LTR", overrides)


def test_numeric_string_overrides_are_coerced() -> None:
    _, params = resolve_params("BRRR", {"ltv": "80", "exit_year": "7", "refi_year": 2.0})

    assert params["ltv"] == 80.0
    assert params["exit_year"] == 7
    assert isinstance(params["refi_year"], int)


def test_non_positive_inputs_rejected() -> None:
    with pytest.raises(UnderwritingError):
        simulate_strategy(0, 1_000, "LTR")
    with pytest.raises(UnderwritingError):
        simulate_strategy(200_000, 0, "LTR")


def test_irr_failure_becomes_a_warning(monkeypatch) -> None:
    def no_root(_flows):
        raise IRRConvergenceError("IRR did not converge")

    monkeypatch.setattr(strategy, "irr", no_root)

    result = simulate_strategy(200_000, 1_000, "LTR")

    assert result.metrics["irr_10yr_pct"] is None
    assert result.warnings == ["IRR did not converge"]


def test_presets_cover_the_four_strategies() -> None:
    assert set(STRATEGY_PRESETS) == {"LTR", "HMO", "BRRR", "STR"}
