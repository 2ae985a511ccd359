"""
REPT - Data Models
==================
Pydantic models shared by the validator, the calculators, the usage
quota enforcer and the API.

These models serve as the contract between:
- Raw form/API input
- Input validation
- Cost calculation engine
- Usage metering
- Frontend display
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from market_constants import CalculatorType


# =============================================================================
# ENUMS
# =============================================================================

class Tier(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    REGISTERED = "registered"
    PRO = "pro"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]


_TIER_LEVELS = {
    Tier.ANONYMOUS: -1,
    Tier.FREE: 0,
    Tier.REGISTERED: 1,
    Tier.PRO: 2,
}


class MortgageRateType(str, Enum):
    VARIABLE = "variable"
    FIXED = "fixed"
    MIXED = "mixed"


class IntendedUse(str, Enum):
    MAIN_RESIDENCE = "main-residence"
    SECONDARY = "secondary"
    INVESTMENT = "investment"


class BreakdownCategory(str, Enum):
    FEE = "fee"
    TAX = "tax"
    COST = "cost"
    INSURANCE = "insurance"
    OTHER = "other"


class MetricFormat(str, Enum):
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    NUMBER = "number"
    YEARS = "years"


class UsageReason(str, Enum):
    NONE = "none"
    DAILY_LIMIT = "daily_limit"
    RATE_LIMIT = "rate_limit"


class QuotaState(str, Enum):
    WITHIN_LIMIT = "within-limit"
    AT_LIMIT = "at-limit"
    RATE_LIMITED = "rate-limited"


# =============================================================================
# CALCULATOR INPUTS
# =============================================================================

class BaseCalculatorInput(BaseModel):
    """Fields every calculator needs."""
    model_config = ConfigDict(allow_inf_nan=False)

    property_value: float = Field(gt=0, description="Property value in EUR")
    location: str = Field(description="Region code, e.g. 'lisboa'")


class SellHouseInput(BaseCalculatorInput):
    """Inputs for the house-selling cost calculator."""

    # Mortgage
    has_outstanding_mortgage: bool = False
    outstanding_mortgage_amount: Optional[float] = Field(default=None, ge=0)
    mortgage_rate_type: MortgageRateType = MortgageRateType.VARIABLE

    # Capital gains (mais-valias)
    has_capital_gains: bool = False
    original_purchase_price: Optional[float] = Field(default=None, ge=0)
    improvement_costs: float = Field(default=0.0, ge=0)
    year_of_purchase: Optional[int] = Field(default=None, ge=1900)
    is_main_residence: bool = False

    # Fraction, e.g. 0.06. None = market average
    commission_rate: Optional[float] = Field(default=None, ge=0, le=1)


class BuyHouseInput(BaseCalculatorInput):
    """Inputs for the house-buying cost calculator."""
    is_first_time_buyer: bool
    has_existing_property: bool = False
    intended_use: IntendedUse = IntendedUse.MAIN_RESIDENCE
    buyer_age: Optional[int] = Field(default=None, ge=18, le=120)
    financing_amount: float = Field(default=0.0, ge=0)
    include_insurance: bool = False
    buyer_commission_rate: float = Field(default=0.0, ge=0, le=1)


class MortgageInput(BaseModel):
    """Inputs for the mortgage simulator."""
    model_config = ConfigDict(allow_inf_nan=False)

    property_value: float = Field(gt=0)
    location: Optional[str] = None
    loan_amount: float = Field(gt=0)
    interest_rate: float = Field(gt=0, le=1, description="Annual rate, fraction")
    loan_term_years: int = Field(ge=1, le=60)
    mortgage_rate_type: MortgageRateType = MortgageRateType.VARIABLE
    include_insurance: bool = True
    monthly_income: Optional[float] = Field(default=None, ge=0)
    monthly_expenses: float = Field(default=0.0, ge=0)
    borrower_age: Optional[int] = Field(default=None, ge=18, le=120)


class RentalInvestmentInput(BaseCalculatorInput):
    """Inputs for the rental investment calculator."""
    monthly_rent: float = Field(gt=0)
    financing_amount: float = Field(default=0.0, ge=0)
    interest_rate: float = Field(default=0.04, ge=0, le=1)
    loan_term_years: int = Field(default=30, ge=1, le=60)
    vacancy_rate: float = Field(default=0.05, ge=0, le=1)
    management_fee_rate: float = Field(default=0.0, ge=0, le=1)
    monthly_condominium: float = Field(default=0.0, ge=0)
    annual_maintenance: Optional[float] = Field(default=None, ge=0)
    improvement_costs: float = Field(default=0.0, ge=0)


class PropertyFlipInput(BaseCalculatorInput):
    """Inputs for the buy-renovate-resell calculator. property_value is the purchase price."""
    renovation_costs: float = Field(ge=0)
    target_sale_price: float = Field(gt=0)
    holding_months: int = Field(default=6, ge=1, le=120)
    monthly_holding_costs: float = Field(default=0.0, ge=0)
    financing_amount: float = Field(default=0.0, ge=0)
    interest_rate: float = Field(default=0.06, ge=0, le=1)
    sale_commission_rate: Optional[float] = Field(default=None, ge=0, le=1)


class SwitchHouseInput(BaseCalculatorInput):
    """Inputs for selling the current home and buying a new one. property_value is the current home."""
    new_property_value: float = Field(gt=0)
    new_location: Optional[str] = None

    # Current home
    has_outstanding_mortgage: bool = False
    outstanding_mortgage_amount: Optional[float] = Field(default=None, ge=0)
    mortgage_rate_type: MortgageRateType = MortgageRateType.VARIABLE
    has_capital_gains: bool = False
    original_purchase_price: Optional[float] = Field(default=None, ge=0)
    improvement_costs: float = Field(default=0.0, ge=0)
    year_of_purchase: Optional[int] = Field(default=None, ge=1900)
    commission_rate: Optional[float] = Field(default=None, ge=0, le=1)

    # New home
    new_financing_amount: float = Field(default=0.0, ge=0)
    new_is_main_residence: bool = True
    buyer_age: Optional[int] = Field(default=None, ge=18, le=120)
    include_insurance: bool = False

    # Bridge loan (crédito ponte)
    bridge_loan_needed: bool = False
    bridge_loan_months: int = Field(default=0, ge=0, le=36)
    bridge_loan_rate: float = Field(default=0.06, ge=0, le=1)


# =============================================================================
# CALCULATION RESULTS
# =============================================================================

class BreakdownItem(BaseModel):
    """One line of a cost breakdown."""
    id: str
    label: str
    value: float
    category: BreakdownCategory
    required: bool = True
    is_deduction: bool = True
    description: str = ""


class KeyMetric(BaseModel):
    label: str
    value: float
    format: MetricFormat = MetricFormat.CURRENCY


class CalculationResult(BaseModel):
    """
    Complete calculation result.

    total_costs always equals the sum of the is_deduction breakdown lines.
    net_proceeds never goes below zero.
    """
    calculator_type: CalculatorType
    total_costs: float
    net_proceeds: float = Field(ge=0)
    breakdown: List[BreakdownItem]
    key_metrics: List[KeyMetric] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    disclaimers: List[str] = Field(default_factory=list)

    # Calculator-specific figures (capital gains tax, monthly payment, yields...)
    details: Dict[str, Any] = Field(default_factory=dict)

    def item(self, item_id: str) -> Optional[BreakdownItem]:
        """Find a breakdown line by id."""
        for line in self.breakdown:
            if line.id == item_id:
                return line
        return None


# =============================================================================
# VALIDATION RESULTS
# =============================================================================

class ValidationResult(BaseModel):
    """Hard errors block calculation; warnings are advisory only."""
    errors: Dict[str, str] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def is_valid(self) -> bool:
        return not self.errors


# =============================================================================
# USAGE / QUOTA MODELS
# =============================================================================

class UsageCounter(BaseModel):
    """Stored daily counter for one caller."""
    count: int = Field(default=0, ge=0)
    last_reset: Optional[str] = Field(default=None, description="ISO date of the last reset")


class UsageDecision(BaseModel):
    """
    Outcome of a quota check.

    remaining and daily_limit are None for unbounded tiers.
    degraded is True when the usage store failed and the fail policy decided.
    """
    allowed: bool
    remaining: Optional[int] = None
    reset_time: datetime
    reason: UsageReason = UsageReason.NONE
    state: QuotaState = QuotaState.WITHIN_LIMIT
    tier: Tier
    daily_limit: Optional[int] = None
    used: int = 0
    retry_after_seconds: Optional[int] = None
    degraded: bool = False


class TierAccess(BaseModel):
    """Whether a tier may open a given calculator."""
    has_access: bool
    required_tier: Tier
    current_tier: Tier
    upgrade_url: str = "/pricing"
    message: str = ""


class UsageWarning(BaseModel):
    should_warn: bool
    warning_type: Optional[str] = None
    message: str = ""


class UpgradeRecommendation(BaseModel):
    """Whether to nudge the caller towards a higher tier, and why."""
    should_recommend_upgrade: bool = False
    recommended_tier: Tier
    reasons: List[str] = Field(default_factory=list)
    benefits: List[str] = Field(default_factory=list)
