from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Auth ──────────────────────────────────────────────────────────────────


class SignupRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    email: str = Field(..., min_length=5)
    password: str = Field(..., min_length=8)
    full_name: str = ""


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, description="Username or email")
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class SubscriptionSummary(BaseModel):
    tier: str
    status: str | None = None
    product_id: str | None = None
    current_period_end: int | None = None


class AccountResponse(BaseModel):
    username: str
    email: str
    full_name: str
    subscription_tier: str
    subscription: SubscriptionSummary | None = None
    last_login: str | None = None


# ── Underwriting ──────────────────────────────────────────────────────────


class AssumptionsModel(BaseModel):
    deposit_pct: float = Field(25.0, description="Deposit as % of price")
    apr: float = Field(5.5, ge=0, description="Annual interest rate, %")
    term_years: int = Field(25, ge=0)
    interest_only: bool = True
    voids_pct: float = Field(5.0, ge=0)
    maintenance_pct: float = Field(8.0, ge=0)
    management_pct: float = Field(10.0, ge=0)
    insurance_annual: float = Field(300.0, ge=0)


class CalculateRequest(BaseModel):
    price: float = Field(..., description="Purchase price")
    monthly_rent: float = Field(..., ge=0)
    assumptions: AssumptionsModel = Field(default_factory=AssumptionsModel)


class CalculateDealRequest(BaseModel):
    assumptions: AssumptionsModel | None = None
    monthly_rent: float | None = Field(None, ge=0, description="Override the listing's rent estimate")


class KPIResponse(BaseModel):
    success: bool = True
    listing_id: int | None = None
    assumptions: dict[str, Any]
    kpis: dict[str, Any]
    investment_grade: str


class ScenarioParametersModel(BaseModel):
    name: str = "Custom scenario"
    interest_rate_change_bps: float = 0.0
    rent_change_pct: float = Field(0.0, gt=-100)
    void_rate_change_pct: float = 0.0
    maintenance_change_pct: float = 0.0
    property_value_change_pct: float = Field(0.0, gt=-100)


class DealInput(BaseModel):
    listing_id: int | None = None
    price: float | None = None
    monthly_rent: float | None = Field(None, ge=0)
    assumptions: AssumptionsModel = Field(default_factory=AssumptionsModel)


class DealScenarioRequest(BaseModel):
    deal: DealInput
    scenario: ScenarioParametersModel = Field(default_factory=ScenarioParametersModel)


class PortfolioScenarioRequest(BaseModel):
    deals: list[DealInput] = Field(..., min_length=1, max_length=200)
    scenarios: list[ScenarioParametersModel] = Field(default_factory=list, max_length=20)
    use_presets: bool = Field(False, description="Append the built-in UK stress scenarios")
    save: bool = True


class ScenarioResponse(BaseModel):
    scenario_name: str
    parameters: dict[str, Any]
    baseline: dict[str, Any]
    scenario: dict[str, Any]
    current_value: float
    delta: dict[str, float]
    risk_flags: list[str]


class PortfolioScenarioResponse(BaseModel):
    results: list[dict[str, Any]]
    run_ids: list[int] = []


class StrategySimRequest(BaseModel):
    listing_id: int | None = None
    price: float | None = None
    monthly_rent: float | None = None
    interest_rate: float = Field(5.5, ge=0)
    strategy_key: str = Field(..., min_length=2)
    overrides: dict[str, Any] = Field(default_factory=dict)


class StrategySimResponse(BaseModel):
    listing_id: int | None = None
    strategy_key: str
    strategy_label: str
    assumptions: dict[str, Any]
    metrics: dict[str, Any]
    projection_10yr: list[dict[str, Any]]
    warnings: list[str] = []


class RealityRequest(BaseModel):
    listing_id: int | None = None
    price: float | None = None
    monthly_rent: float | None = Field(None, ge=0)
    region: str = "UK"
    ltv_pct: float = Field(75.0, ge=0, lt=100)
    interest_rate_pct: float = Field(5.5, ge=0)
    opex_pct: float = Field(25.0, ge=0)
    vacancy_pct: float = Field(6.0, ge=0)
    other_income: float = Field(0.0, ge=0)
    current_epc: str | None = Field(None, pattern="^[A-Ga-g]$")
    target_epc: str = Field("C", pattern="^[A-Ga-g]$")
    epc_cost_override: float | None = Field(None, ge=0)
    licensing_annual: float = Field(0.0, ge=0)
    apply_tax: bool = True
    apply_epc: bool = True
    apply_licensing: bool = True


class EPCAdviceRequest(BaseModel):
    listing_id: int | None = None
    current_epc: str = Field("D", pattern="^[A-Ga-g]$")
    target_epc: str = Field("C", pattern="^[A-Ga-g]$")
    price: float | None = Field(None, gt=0)
    estimated_rent: float | None = Field(None, gt=0)


# ── Ingestion ─────────────────────────────────────────────────────────────


class IngestRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str | None = None
    url: str | None = None
    max_items: int | None = Field(None, alias="maxItems", gt=0, le=1000)
    user_id: str | None = Field(None, alias="userId")
    location: str | None = None
    queue: bool = Field(False, description="Queue for the worker instead of running inline")


class IngestResponse(BaseModel):
    job_id: str
    status: str
    provider: str
    items_found: int = 0
    items_valid: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_invalid: int = 0
    invalid_reasons: dict[str, int] = {}
    basic_mode: bool = False
    run_id: str | None = None
    dataset_id: str | None = None
    error: str | None = None
    error_code: str | None = None


class WorkerResponse(BaseModel):
    processed: int
    results: list[IngestResponse]


class JobResponse(BaseModel):
    job: dict[str, Any]
    events: list[dict[str, Any]]


# ── Listings ──────────────────────────────────────────────────────────────


class ListingResponse(BaseModel):
    id: int
    source: str
    source_listing_id: str
    property_address: str
    postcode: str | None = None
    city: str | None = None
    region: str | None = None
    property_type: str | None = None
    price: float
    currency: str
    bedrooms: int | None = None
    bathrooms: int | None = None
    image_url: str | None = None
    images: list[str] = []
    listing_url: str | None = None
    location_lat: float | None = None
    location_lng: float | None = None
    estimated_rent: float | None = None
    yield_percentage: float | None = None
    roi_percentage: float | None = None
    cash_flow_monthly: float | None = None
    investment_score: str | None = None
    metrics: dict[str, Any] | None = None


class ListingsPage(BaseModel):
    items: list[ListingResponse]
    count: int
    limit: int
    offset: int
