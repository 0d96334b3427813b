"""
PropYield — Underwriting API Routes
════════════════════════════════════
Endpoints:
  POST /calculate              — KPIs from inline price, rent and assumptions
  POST /listings/{id}          — calculate-deal for a stored listing (persisted)
  POST /scenario               — what-if on one deal
  POST /portfolio-scenarios    — what-if across a portfolio (persisted runs)
  POST /strategy-sim           — 10-year strategy projection with IRR
  POST /reality                — tax / EPC / licensing adjusted returns
  POST /epc-advice             — EPC retrofit package and payback
"""
from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException

from .. import reality, store, strategy
from ..auth import UserRecord, get_current_user
from ..logging import log_event
from ..scenarios import UK_SCENARIOS, Deal, ScenarioParameters, run_deal_scenario, run_portfolio_scenario
from ..schemas import (
    CalculateDealRequest,
    CalculateRequest,
    DealInput,
    DealScenarioRequest,
    EPCAdviceRequest,
    KPIResponse,
    PortfolioScenarioRequest,
    PortfolioScenarioResponse,
    RealityRequest,
    ScenarioResponse,
    StrategySimRequest,
    StrategySimResponse,
)
from ..underwriting import Assumptions, calculate_kpis, investment_grade

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/underwriting", tags=["underwriting"])

FALLBACK_RENT_RATIO = 0.005


def _load_listing(listing_id: int) -> dict:
    listing = store.get_listing(listing_id)
    if listing is None:
        raise HTTPException(404, detail={"error": "Listing not found", "code": "ERR_LISTING_NOT_FOUND"})
    return listing


def _price_and_rent(
    listing_id: int | None, price: float | None, monthly_rent: float | None
) -> tuple[float, float, dict | None]:
    """Price and rent from the request, falling back to the stored listing."""
    listing = _load_listing(listing_id) if listing_id is not None else None
    if listing is not None:
        price = price or listing["price"]
    if price is None:
        raise HTTPException(400, detail={"error": "price or listing_id is required", "code": "ERR_MISSING_PARAMS"})
    if monthly_rent is None:
        monthly_rent = (listing or {}).get("estimated_rent") or price * FALLBACK_RENT_RATIO
    return price, monthly_rent, listing


def _deal(d: DealInput) -> Deal:
    price, rent, _ = _price_and_rent(d.listing_id, d.price, d.monthly_rent)
    return Deal(
        price=price,
        monthly_rent=rent,
        assumptions=Assumptions(**d.assumptions.model_dump()),
        listing_id=d.listing_id,
    )


@router.post("/calculate", response_model=KPIResponse)
def calculate(
    request: CalculateRequest,
    _user: UserRecord = Depends(get_current_user),
) -> KPIResponse:
    """Underwrite a deal from inline inputs."""
    assumptions = Assumptions(**request.assumptions.model_dump())
    kpis = calculate_kpis(request.price, request.monthly_rent, assumptions)
    return KPIResponse(
        assumptions=assumptions.to_dict(),
        kpis=kpis.to_dict(),
        investment_grade=investment_grade(kpis.gross_yield_pct),
    )


@router.post("/listings/{listing_id}", response_model=KPIResponse)
def calculate_deal(
    listing_id: int,
    request: CalculateDealRequest | None = None,
    _user: UserRecord = Depends(get_current_user),
) -> KPIResponse:
    """Underwrite a stored listing and persist the result to its metrics."""
    request = request or CalculateDealRequest()
    listing = _load_listing(listing_id)
    stored = (listing.get("metrics") or {}).get("assumptions")
    if request.assumptions is not None:
        assumptions = Assumptions(**request.assumptions.model_dump())
    else:
        assumptions = Assumptions.from_dict(stored)

    price = listing["price"]
    rent = request.monthly_rent
    if rent is None:
        rent = listing.get("estimated_rent") or price * FALLBACK_RENT_RATIO
    kpis = calculate_kpis(price, rent, assumptions)
    store.save_listing_metrics(listing_id, assumptions.to_dict(), kpis.to_dict())
    logger.info("calculate-deal listing=%s gross=%.2f%% dscr=%.2f", listing_id, kpis.gross_yield_pct, kpis.dscr)
    return KPIResponse(
        listing_id=listing_id,
        assumptions=assumptions.to_dict(),
        kpis=kpis.to_dict(),
        investment_grade=investment_grade(kpis.gross_yield_pct),
    )


@router.post("/scenario", response_model=ScenarioResponse)
def deal_scenario(
    request: DealScenarioRequest,
    _user: UserRecord = Depends(get_current_user),
) -> ScenarioResponse:
    result = run_deal_scenario(_deal(request.deal), ScenarioParameters(**request.scenario.model_dump()))
    return ScenarioResponse(**result.to_dict())


@router.post("/portfolio-scenarios", response_model=PortfolioScenarioResponse)
def portfolio_scenarios(
    request: PortfolioScenarioRequest,
    user: UserRecord = Depends(get_current_user),
) -> PortfolioScenarioResponse:
    deals = [_deal(d) for d in request.deals]
    params = [ScenarioParameters(**s.model_dump()) for s in request.scenarios]
    if request.use_presets or not params:
        params.extend(UK_SCENARIOS)

    results = [run_portfolio_scenario(deals, p).to_dict() for p in params]
    run_ids: list[int] = []
    if request.save:
        run_ids = [
            store.save_scenario_run(user.id, r["scenario_name"], r["parameters"], r)
            for r in results
        ]
    log_event("portfolio_scenarios", {
        "user": user.username,
        "deals": len(deals),
        "scenarios": [r["scenario_name"] for r in results],
    })
    return PortfolioScenarioResponse(results=results, run_ids=run_ids)


@router.post("/strategy-sim", response_model=StrategySimResponse)
def strategy_sim(
    request: StrategySimRequest,
    _user: UserRecord = Depends(get_current_user),
) -> StrategySimResponse:
    price, rent, _ = _price_and_rent(request.listing_id, request.price, request.monthly_rent)
    try:
        result = strategy.simulate_strategy(
            price, rent, request.strategy_key, request.overrides, request.interest_rate
        )
    except KeyError:
        raise HTTPException(404, detail={"error": "Strategy not found", "code": "ERR_STRATEGY_NOT_FOUND"})
    return StrategySimResponse(listing_id=request.listing_id, **result.to_dict())


@router.post("/reality")
def reality_mode(
    request: RealityRequest,
    _user: UserRecord = Depends(get_current_user),
) -> dict:
    price, rent, listing = _price_and_rent(request.listing_id, request.price, request.monthly_rent)
    fields = request.model_dump(exclude={"listing_id", "price", "monthly_rent"})
    if listing is not None and request.region == "UK" and listing.get("region"):
        fields["region"] = listing["region"]
    inputs = reality.RealityInputs(price=price, monthly_rent=rent, **fields)
    result = reality.adjusted_metrics(inputs)
    return {"inputs": asdict(inputs), **result.to_dict()}


@router.post("/epc-advice")
def epc_advice(
    request: EPCAdviceRequest,
    _user: UserRecord = Depends(get_current_user),
) -> dict:
    price, rent = request.price, request.estimated_rent
    if request.listing_id is not None:
        listing = _load_listing(request.listing_id)
        price = price or listing["price"]
        rent = rent or listing.get("estimated_rent")
    advice = reality.epc_advice(request.current_epc, request.target_epc, price, rent)
    return {"listing_id": request.listing_id, **advice}
