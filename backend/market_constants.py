"""
REPT - Market Constants
=======================
Portuguese real-estate rate tables and fixed fees (2025).

These tables are the ONLY source of truth for every calculator.
They are immutable models so a different jurisdiction (or a test table)
can be injected without touching calculation code.

Last Updated: 2025 (IMT brackets per Lei do OE 2025, continental Portugal)
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================

class Region(str, Enum):
    LISBOA = "lisboa"
    PORTO = "porto"
    BRAGA = "braga"
    AVEIRO = "aveiro"
    COIMBRA = "coimbra"
    SETUBAL = "setubal"
    FARO = "faro"


class CalculatorType(str, Enum):
    SELL_HOUSE = "sell-house"
    BUY_HOUSE = "buy-house"
    MORTGAGE_SIMULATOR = "mortgage-simulator"
    RENTAL_INVESTMENT = "rental-investment"
    PROPERTY_FLIP = "property-flip"
    SWITCH_HOUSE = "switch-house"


class ImtSchedule(str, Enum):
    MAIN_RESIDENCE = "main_residence"   # Habitação própria permanente (HPP)
    SECONDARY = "secondary"             # Habitação secundária / arrendamento
    OTHER_URBAN = "other_urban"         # Comércio, serviços
    RUSTIC = "rustic"


# =============================================================================
# RATE TABLE MODELS
# =============================================================================

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CommissionRange(_Frozen):
    min: float
    max: float
    average: float


class RegionRateTable(_Frozen):
    """Static reference data for one region. Loaded once at startup."""
    code: str
    name: str
    imt_residential_rates: Tuple[float, ...] = (0.0, 0.02, 0.05, 0.07, 0.08)
    imt_commercial_rate: float = 0.065
    stamp_duty_rate: float = 0.008
    average_price_per_m2: float = Field(description="Informational, EUR per m²")
    commission_range: CommissionRange = CommissionRange(min=0.05, max=0.07, average=0.06)
    popular_areas: Tuple[str, ...] = ()


class ImtBracket(_Frozen):
    """
    One IMT bracket.

    Marginal brackets use: value * rate - deduction (parcela a abater).
    Flat brackets apply the single rate to the whole value.
    upper_limit None means open-ended.
    """
    upper_limit: Optional[float]
    rate: float
    deduction: float = 0.0
    flat: bool = False


class EuriborRates(_Frozen):
    rate_3m: float
    rate_6m: float
    rate_12m: float
    last_updated: str


class LegalFees(_Frozen):
    notary_rate: float = 0.001
    notary_min: float = 200
    notary_max: float = 800
    registration: float = 250
    documentation: float = 150
    lawyer_min: float = 500
    lawyer_max: float = 2000
    # Casa Pronta: deed + land registry in one fixed-price act (buyer side)
    casa_pronta: float = 700


class TaxRates(_Frozen):
    capital_gains: float = 0.28
    vat: float = 0.23
    stamp_duty_acquisition: float = 0.008
    stamp_duty_loan: float = 0.006
    stamp_duty_interest: float = 0.04
    rental_income: float = 0.25
    imi: float = 0.003


class EarlyTerminationFees(_Frozen):
    variable_rate: float = 0.005
    variable_cap: float = 250
    fixed_rate: float = 0.02


class BankFees(_Frozen):
    valuation: float = 300
    dossier: float = 250


class InsuranceRates(_Frozen):
    life_annual_on_loan: float = 0.003
    multi_risk_annual_on_value: float = 0.001


class ValueBands(_Frozen):
    """Typical market bands. Values outside only produce warnings."""
    property_value_low: float = 50_000
    property_value_high: float = 1_000_000
    commission_min: float = 0.02
    commission_max: float = 0.15


class YoungBuyerRelief(_Frozen):
    """
    IMT Jovem (Decreto-Lei 48-A/2024): buyers up to max_age, first main residence.

    Full exemption up to the 4th HPP bracket, marginal IMT on the excess
    up to the 5th, no relief above.
    """
    max_age: int = 35
    full_exemption_limit: float = 324_058
    partial_exemption_limit: float = 648_022
    excess_imt_rate: float = 0.08


# =============================================================================
# REGIONS
# =============================================================================

PORTUGUESE_REGIONS: Tuple[RegionRateTable, ...] = (
    RegionRateTable(
        code=Region.LISBOA.value,
        name="Lisboa",
        average_price_per_m2=4500,
        popular_areas=("Chiado", "Príncipe Real", "Santos", "Alcântara", "Parque das Nações"),
    ),
    RegionRateTable(
        code=Region.PORTO.value,
        name="Porto",
        average_price_per_m2=2800,
        popular_areas=("Cedofeita", "Foz do Douro", "Campanhã", "Paranhos", "Ramalde"),
    ),
    RegionRateTable(
        code=Region.BRAGA.value,
        name="Braga",
        average_price_per_m2=1400,
        popular_areas=("Centro Histórico", "São Victor", "Maximinos", "Nogueiró"),
    ),
    RegionRateTable(
        code=Region.AVEIRO.value,
        name="Aveiro",
        average_price_per_m2=1600,
        popular_areas=("Centro", "Glória", "São Bernardo", "Vera Cruz"),
    ),
    RegionRateTable(
        code=Region.COIMBRA.value,
        name="Coimbra",
        average_price_per_m2=1800,
        popular_areas=("Baixa", "Alta", "Solum", "Santo António dos Olivais"),
    ),
    RegionRateTable(
        code=Region.SETUBAL.value,
        name="Setúbal",
        average_price_per_m2=2200,
        popular_areas=("Centro", "São Sebastião", "São Julião", "Arrabalde"),
    ),
    RegionRateTable(
        code=Region.FARO.value,
        name="Faro / Algarve",
        average_price_per_m2=3200,
        popular_areas=("Vilamoura", "Albufeira", "Lagos", "Tavira", "Sagres"),
    ),
)


# =============================================================================
# 2025 IMT BRACKETS (continental Portugal)
# =============================================================================

IMT_MAIN_RESIDENCE_2025: Tuple[ImtBracket, ...] = (
    ImtBracket(upper_limit=104_261, rate=0.0, deduction=0.0),
    ImtBracket(upper_limit=142_618, rate=0.02, deduction=2_085.22),
    ImtBracket(upper_limit=194_458, rate=0.05, deduction=6_363.76),
    ImtBracket(upper_limit=324_058, rate=0.07, deduction=10_252.92),
    ImtBracket(upper_limit=648_022, rate=0.08, deduction=13_493.50),
    ImtBracket(upper_limit=1_128_287, rate=0.06, flat=True),
    ImtBracket(upper_limit=None, rate=0.075, flat=True),
)

IMT_SECONDARY_2025: Tuple[ImtBracket, ...] = (
    ImtBracket(upper_limit=104_261, rate=0.01, deduction=0.0),
    ImtBracket(upper_limit=142_618, rate=0.02, deduction=1_042.61),
    ImtBracket(upper_limit=194_458, rate=0.05, deduction=5_321.15),
    ImtBracket(upper_limit=324_058, rate=0.07, deduction=9_210.31),
    ImtBracket(upper_limit=621_501, rate=0.08, deduction=12_450.89),
    ImtBracket(upper_limit=1_128_287, rate=0.06, flat=True),
    ImtBracket(upper_limit=None, rate=0.075, flat=True),
)

IMT_FLAT_RATES_2025: Dict[ImtSchedule, float] = {
    ImtSchedule.OTHER_URBAN: 0.065,
    ImtSchedule.RUSTIC: 0.05,
}


# =============================================================================
# MARKET DATA
# =============================================================================

class MarketData(_Frozen):
    """
    Every rate the calculators need, bundled so it can be injected.

    DEFAULT_MARKET_DATA below is the production table.
    """
    regions: Tuple[RegionRateTable, ...] = PORTUGUESE_REGIONS
    imt_main_residence: Tuple[ImtBracket, ...] = IMT_MAIN_RESIDENCE_2025
    imt_secondary: Tuple[ImtBracket, ...] = IMT_SECONDARY_2025
    imt_flat_rates: Dict[ImtSchedule, float] = IMT_FLAT_RATES_2025
    young_buyer: YoungBuyerRelief = YoungBuyerRelief()
    euribor: EuriborRates = EuriborRates(
        rate_3m=0.035, rate_6m=0.038, rate_12m=0.041, last_updated="2025-01-15"
    )
    selling_commission: CommissionRange = CommissionRange(min=0.05, max=0.07, average=0.06)
    buying_commission: CommissionRange = CommissionRange(min=0.02, max=0.04, average=0.03)
    legal_fees: LegalFees = LegalFees()
    tax_rates: TaxRates = TaxRates()
    early_termination: EarlyTerminationFees = EarlyTerminationFees()
    bank_fees: BankFees = BankFees()
    insurance: InsuranceRates = InsuranceRates()
    value_bands: ValueBands = ValueBands()

    # Main-residence capital gains exemption: minimum years of ownership
    capital_gains_exemption_years: int = 3

    # Sell-side preparation costs
    energy_certificate: float = 250
    cleaning_min: float = 500
    cleaning_rate: float = 0.002

    # Landlord upkeep when not given, fraction of property value per year
    maintenance_rate: float = 0.005

    # Buy-renovate-resell rule of thumb: pay at most 70% of resale minus works
    flip_max_purchase_ratio: float = 0.70

    # Recommendation thresholds
    high_cost_ratio: float = 0.15
    high_commission_ratio: float = 0.07
    high_early_termination_fee: float = 1000
    low_gross_yield: float = 0.04
    good_net_yield: float = 0.05
    thin_flip_margin: float = 0.10

    # Buy-side limits
    max_ltv: float = 0.90
    typical_ltv: float = 0.80

    # Affordability (Banco de Portugal macroprudential guidance)
    max_dsti: float = 0.35
    max_age_at_maturity: int = 75


DEFAULT_MARKET_DATA = MarketData()


# =============================================================================
# CALCULATOR CATALOGUE
# =============================================================================

class CalculatorInfo(_Frozen):
    id: CalculatorType
    name: str
    description: str
    category: str
    required_fields: Tuple[str, ...]
    min_tier: str


CALCULATOR_CATALOGUE: Dict[CalculatorType, CalculatorInfo] = {
    CalculatorType.SELL_HOUSE: CalculatorInfo(
        id=CalculatorType.SELL_HOUSE,
        name="Calculadora de Venda de Casa",
        description="Custos de venda do imóvel: comissões, impostos e liquidação de hipoteca.",
        category="selling",
        required_fields=("property_value", "location"),
        min_tier="free",
    ),
    CalculatorType.BUY_HOUSE: CalculatorInfo(
        id=CalculatorType.BUY_HOUSE,
        name="Calculadora de Compra de Casa",
        description="Custos de compra: IMT, imposto do selo, seguros e taxas legais.",
        category="buying",
        required_fields=("property_value", "location", "is_first_time_buyer"),
        min_tier="free",
    ),
    CalculatorType.MORTGAGE_SIMULATOR: CalculatorInfo(
        id=CalculatorType.MORTGAGE_SIMULATOR,
        name="Simulador de Crédito Habitação",
        description="Prestação, juros totais e custos do crédito habitação.",
        category="financing",
        required_fields=("property_value", "loan_amount", "interest_rate", "loan_term_years"),
        min_tier="registered",
    ),
    CalculatorType.RENTAL_INVESTMENT: CalculatorInfo(
        id=CalculatorType.RENTAL_INVESTMENT,
        name="Calculadora de Investimento Imobiliário",
        description="Rentabilidade de arrendamento: yield, cash-on-cash e impostos.",
        category="investment",
        required_fields=("property_value", "location", "monthly_rent"),
        min_tier="pro",
    ),
    CalculatorType.PROPERTY_FLIP: CalculatorInfo(
        id=CalculatorType.PROPERTY_FLIP,
        name="Calculadora de Flip Imobiliário",
        description="Viabilidade de compra, renovação e revenda.",
        category="investment",
        required_fields=("property_value", "location", "renovation_costs", "target_sale_price"),
        min_tier="pro",
    ),
    CalculatorType.SWITCH_HOUSE: CalculatorInfo(
        id=CalculatorType.SWITCH_HOUSE,
        name="Calculadora de Troca de Casa",
        description="Venda e compra simultânea, incluindo crédito ponte.",
        category="buying",
        required_fields=("property_value", "location", "new_property_value"),
        min_tier="pro",
    ),
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def region_codes(market: MarketData = DEFAULT_MARKET_DATA) -> List[str]:
    return [r.code for r in market.regions]


def get_region(code: Optional[str], market: MarketData = DEFAULT_MARKET_DATA) -> RegionRateTable:
    """Look up a region, defaulting to the first table (Lisboa) for unknown codes."""
    for region in market.regions:
        if region.code == code:
            return region
    return market.regions[0]


def calculate_imt(
    value: float,
    schedule: ImtSchedule,
    market: MarketData = DEFAULT_MARKET_DATA
) -> float:
    """
    Calculate IMT (Imposto Municipal sobre Transmissões) for an acquisition.

    Args:
        value: Acquisition value (or tax value, whichever is higher)
        schedule: Which IMT table applies

    Returns:
        IMT owed, rounded to cents
    """
    if value <= 0:
        return 0.0

    if schedule in market.imt_flat_rates:
        return round(value * market.imt_flat_rates[schedule], 2)

    brackets = (
        market.imt_main_residence
        if schedule == ImtSchedule.MAIN_RESIDENCE
        else market.imt_secondary
    )

    for bracket in brackets:
        if bracket.upper_limit is None or value <= bracket.upper_limit:
            if bracket.flat:
                return round(value * bracket.rate, 2)
            return round(max(0.0, value * bracket.rate - bracket.deduction), 2)

    return round(value * brackets[-1].rate, 2)


def monthly_payment(principal: float, annual_rate: float, years: float) -> float:
    """French (constant instalment) amortisation payment."""
    months = years * 12
    if principal <= 0 or months <= 0:
        return 0.0
    monthly_rate = annual_rate / 12
    if monthly_rate == 0:
        return principal / months
    factor = (1 + monthly_rate) ** months
    return principal * monthly_rate * factor / (factor - 1)
