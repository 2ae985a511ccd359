"""
REPT - Input Validation
=======================
Structural and business-rule validation that must run before any calculation.

Validation is a pure function of the input: it never raises for bad data,
it returns a ValidationResult with field errors (hard blockers) and
warnings (advisory). Calculators assume validated input and do not re-check.

Business rules are a list of named, independently testable predicates run
in a fixed order. Adding a jurisdiction-specific rule means appending one
ValidationRule to the right list.
"""

import math
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from market_constants import (
    CalculatorType,
    DEFAULT_MARKET_DATA,
    MarketData,
    monthly_payment,
    region_codes,
)
from models import (
    BuyHouseInput,
    IntendedUse,
    MortgageInput,
    PropertyFlipInput,
    RentalInvestmentInput,
    SellHouseInput,
    SwitchHouseInput,
    ValidationResult,
)


INPUT_MODELS: Dict[CalculatorType, Type[BaseModel]] = {
    CalculatorType.SELL_HOUSE: SellHouseInput,
    CalculatorType.BUY_HOUSE: BuyHouseInput,
    CalculatorType.MORTGAGE_SIMULATOR: MortgageInput,
    CalculatorType.RENTAL_INVESTMENT: RentalInvestmentInput,
    CalculatorType.PROPERTY_FLIP: PropertyFlipInput,
    CalculatorType.SWITCH_HOUSE: SwitchHouseInput,
}


# Portuguese messages for structural (type/constraint) errors
STRUCTURAL_MESSAGES = {
    "float_parsing": "Deve ser um número válido",
    "float_type": "Deve ser um número válido",
    "finite_number": "Deve ser um número finito",
    "int_parsing": "Deve ser um número inteiro",
    "int_type": "Deve ser um número inteiro",
    "int_from_float": "Deve ser um número inteiro",
    "bool_parsing": "Deve ser verdadeiro ou falso",
    "bool_type": "Deve ser verdadeiro ou falso",
    "string_type": "Deve ser um texto válido",
    "enum": "Opção inválida",
    "greater_than": "Deve ser maior que zero",
    "greater_than_equal": "Valor abaixo do mínimo permitido",
    "less_than_equal": "Valor acima do máximo permitido",
}
DEFAULT_STRUCTURAL_MESSAGE = "Valor inválido"


# =============================================================================
# RULE MODEL
# =============================================================================

class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class RuleContext:
    today: date
    market: MarketData


Predicate = Callable[[Dict[str, Any], RuleContext], bool]


def _always(data: Dict[str, Any], ctx: RuleContext) -> bool:
    return True


@dataclass(frozen=True)
class ValidationRule:
    """
    A single named business rule.

    check returns True when the input passes. The rule is skipped
    entirely when applies returns False.
    """
    name: str
    description: str
    field: str
    message: str
    check: Predicate
    applies: Predicate = _always
    severity: Severity = Severity.ERROR

    def evaluate(self, data: Dict[str, Any], ctx: RuleContext) -> Optional[bool]:
        """Return None when not applicable, otherwise whether the rule passed."""
        if not self.applies(data, ctx):
            return None
        return bool(self.check(data, ctx))


# =============================================================================
# VALUE HELPERS
# =============================================================================

def _num(data: Dict[str, Any], key: str) -> Optional[float]:
    """Read a numeric field leniently; None when absent, not a number or not finite."""
    value = data.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _flag(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on", "sim")
    return bool(value)


def _present(data: Dict[str, Any], key: str) -> bool:
    return data.get(key) is not None


def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset form fields (None or empty string)."""
    return {k: v for k, v in data.items() if v is not None and v != ""}


# =============================================================================
# RULE FACTORIES (shared across calculators)
# =============================================================================

def required_positive(field: str, message: str) -> ValidationRule:
    return ValidationRule(
        name=f"{field}_required",
        description=f"{field} is required and greater than zero",
        field=field,
        message=message,
        check=lambda d, c: (_num(d, field) or 0) > 0,
    )


def required_present(field: str, message: str = "Este campo é obrigatório") -> ValidationRule:
    return ValidationRule(
        name=f"{field}_required",
        description=f"{field} is required",
        field=field,
        message=message,
        check=lambda d, c: _present(d, field),
    )


def known_region(field: str = "location") -> ValidationRule:
    return ValidationRule(
        name=f"{field}_known_region",
        description=f"{field} is one of the supported regions",
        field=field,
        message="Região não suportada",
        applies=lambda d, c: _present(d, field),
        check=lambda d, c: d.get(field) in region_codes(c.market),
    )


def not_future_year(field: str = "year_of_purchase") -> ValidationRule:
    return ValidationRule(
        name=f"{field}_not_future",
        description=f"{field} is not after the current year",
        field=field,
        message="Ano não pode ser no futuro",
        applies=lambda d, c: _num(d, field) is not None,
        check=lambda d, c: _num(d, field) <= c.today.year,
    )


def property_value_bands(field: str = "property_value") -> List[ValidationRule]:
    return [
        ValidationRule(
            name="property_value_high",
            description="Property value above the typical market range",
            field=field,
            severity=Severity.WARNING,
            message="Para propriedades de alto valor, considere consultoria especializada",
            applies=lambda d, c: (_num(d, field) or 0) > 0,
            check=lambda d, c: _num(d, field) <= c.market.value_bands.property_value_high,
        ),
        ValidationRule(
            name="property_value_low",
            description="Property value below the typical market range",
            field=field,
            severity=Severity.WARNING,
            message="Valores muito baixos podem não refletir o mercado real",
            applies=lambda d, c: (_num(d, field) or 0) > 0,
            check=lambda d, c: _num(d, field) >= c.market.value_bands.property_value_low,
        ),
    ]


def _mortgage_rules(value_field: str = "property_value") -> List[ValidationRule]:
    return [
        ValidationRule(
            name="mortgage_amount_required",
            description="An outstanding mortgage needs its balance",
            field="outstanding_mortgage_amount",
            message="Valor da hipoteca é obrigatório quando tem hipoteca em curso",
            applies=lambda d, c: _flag(d, "has_outstanding_mortgage"),
            check=lambda d, c: (_num(d, "outstanding_mortgage_amount") or 0) > 0,
        ),
        ValidationRule(
            name="mortgage_within_value",
            description="Outstanding balance cannot exceed the property value",
            field="outstanding_mortgage_amount",
            message="Valor da hipoteca não pode ser superior ao valor da propriedade",
            applies=lambda d, c: (
                _num(d, "outstanding_mortgage_amount") is not None
                and _num(d, value_field) is not None
            ),
            check=lambda d, c: _num(d, "outstanding_mortgage_amount") <= _num(d, value_field),
        ),
    ]


def _capital_gains_rules(value_field: str = "property_value") -> List[ValidationRule]:
    return [
        ValidationRule(
            name="purchase_price_required",
            description="Capital gains need the original purchase price",
            field="original_purchase_price",
            message="Preço de compra original é obrigatório para cálculo de mais-valias",
            applies=lambda d, c: _flag(d, "has_capital_gains"),
            check=lambda d, c: (_num(d, "original_purchase_price") or 0) > 0,
        ),
        not_future_year("year_of_purchase"),
        ValidationRule(
            name="purchase_price_above_value",
            description="Selling at a loss is possible but usually a typo",
            field="original_purchase_price",
            severity=Severity.WARNING,
            message="Preço de compra superior ao valor atual - confirme os valores introduzidos",
            applies=lambda d, c: (
                _num(d, "original_purchase_price") is not None
                and _num(d, value_field) is not None
            ),
            check=lambda d, c: _num(d, "original_purchase_price") <= _num(d, value_field),
        ),
    ]


def _commission_band(field: str = "commission_rate") -> ValidationRule:
    return ValidationRule(
        name="commission_band",
        description="Commission within the typical 2%-15% band",
        field=field,
        severity=Severity.WARNING,
        message="Comissão imobiliária fora do intervalo típico (2%-15%)",
        applies=lambda d, c: _num(d, field) is not None,
        check=lambda d, c: (
            c.market.value_bands.commission_min
            <= _num(d, field)
            <= c.market.value_bands.commission_max
        ),
    )


def _dsti_ok(d: Dict[str, Any], c: RuleContext) -> bool:
    available = (_num(d, "monthly_income") or 0) - (_num(d, "monthly_expenses") or 0)
    if available <= 0:
        return False
    payment = monthly_payment(
        _num(d, "loan_amount"), _num(d, "interest_rate"), _num(d, "loan_term_years")
    )
    return payment <= available * c.market.max_dsti


# =============================================================================
# RULE SETS PER CALCULATOR
# =============================================================================

SELL_HOUSE_RULES: List[ValidationRule] = [
    required_positive("property_value", "Valor da propriedade é obrigatório e deve ser maior que zero"),
    required_present("location", "Localização é obrigatória"),
    known_region("location"),
    *_mortgage_rules(),
    *_capital_gains_rules(),
    _commission_band("commission_rate"),
    *property_value_bands(),
    ValidationRule(
        name="exemption_needs_purchase_year",
        description="Main-residence exemption cannot be assessed without a purchase year",
        field="year_of_purchase",
        severity=Severity.WARNING,
        message="Indique o ano de compra para avaliar a isenção de mais-valias",
        applies=lambda d, c: _flag(d, "has_capital_gains") and _flag(d, "is_main_residence"),
        check=lambda d, c: _num(d, "year_of_purchase") is not None,
    ),
]


BUY_HOUSE_RULES: List[ValidationRule] = [
    required_positive("property_value", "Valor da propriedade é obrigatório e deve ser maior que zero"),
    required_present("location", "Localização é obrigatória"),
    known_region("location"),
    required_present("is_first_time_buyer", "Indique se é a primeira habitação"),
    ValidationRule(
        name="financing_within_max_ltv",
        description="Banks finance at most 90% of the property value",
        field="financing_amount",
        message="Montante de financiamento não pode exceder 90% do valor do imóvel",
        applies=lambda d, c: (_num(d, "financing_amount") or 0) > 0 and _num(d, "property_value") is not None,
        check=lambda d, c: _num(d, "financing_amount") <= _num(d, "property_value") * c.market.max_ltv,
    ),
    ValidationRule(
        name="first_time_buyer_owns_nothing",
        description="A first-time buyer cannot already own property",
        field="is_first_time_buyer",
        message="Não pode ser primeira habitação se já possui propriedades",
        applies=lambda d, c: _flag(d, "is_first_time_buyer"),
        check=lambda d, c: not _flag(d, "has_existing_property"),
    ),
    ValidationRule(
        name="first_time_buyer_main_residence",
        description="A first home must be a permanent residence",
        field="intended_use",
        message="Primeira habitação deve ser para habitação própria permanente",
        applies=lambda d, c: _flag(d, "is_first_time_buyer") and _present(d, "intended_use"),
        check=lambda d, c: d.get("intended_use") == IntendedUse.MAIN_RESIDENCE.value,
    ),
    ValidationRule(
        name="financing_above_typical_ltv",
        description="Financing above 80% is rarely granted",
        field="financing_amount",
        severity=Severity.WARNING,
        message="Financiamento acima de 80% do valor - poucos bancos aprovam este rácio",
        applies=lambda d, c: (_num(d, "financing_amount") or 0) > 0 and _num(d, "property_value") is not None,
        check=lambda d, c: _num(d, "financing_amount") <= _num(d, "property_value") * c.market.typical_ltv,
    ),
    *property_value_bands(),
]


MORTGAGE_RULES: List[ValidationRule] = [
    required_positive("property_value", "Valor da propriedade é obrigatório e deve ser maior que zero"),
    known_region("location"),
    required_positive("loan_amount", "Montante do empréstimo é obrigatório"),
    required_positive("interest_rate", "Taxa de juro é obrigatória"),
    required_positive("loan_term_years", "Prazo é obrigatório"),
    ValidationRule(
        name="loan_within_value",
        description="Loan cannot exceed the property value",
        field="loan_amount",
        message="Montante do empréstimo não pode exceder o valor do imóvel",
        applies=lambda d, c: _num(d, "loan_amount") is not None and _num(d, "property_value") is not None,
        check=lambda d, c: _num(d, "loan_amount") <= _num(d, "property_value"),
    ),
    ValidationRule(
        name="loan_term_range",
        description="Term between 5 and 50 years",
        field="loan_term_years",
        message="Prazo deve estar entre 5 e 50 anos",
        applies=lambda d, c: _num(d, "loan_term_years") is not None,
        check=lambda d, c: 5 <= _num(d, "loan_term_years") <= 50,
    ),
    ValidationRule(
        name="interest_rate_range",
        description="Interest rate between 0.5% and 15%",
        field="interest_rate",
        message="Taxa de juro deve estar entre 0,5% e 15%",
        applies=lambda d, c: (_num(d, "interest_rate") or 0) > 0,
        check=lambda d, c: 0.005 <= _num(d, "interest_rate") <= 0.15,
    ),
    ValidationRule(
        name="expenses_below_income",
        description="Monthly expenses must be below monthly income",
        field="monthly_expenses",
        message="Despesas mensais não podem ser iguais ou superiores aos rendimentos",
        applies=lambda d, c: (_num(d, "monthly_income") or 0) > 0 and _num(d, "monthly_expenses") is not None,
        check=lambda d, c: _num(d, "monthly_expenses") < _num(d, "monthly_income"),
    ),
    ValidationRule(
        name="ltv_above_max",
        description="Loan-to-value above the 90% macroprudential limit",
        field="loan_amount",
        severity=Severity.WARNING,
        message="Financiamento acima de 90% do valor do imóvel - dificilmente aprovado",
        applies=lambda d, c: (_num(d, "loan_amount") or 0) > 0 and (_num(d, "property_value") or 0) > 0,
        check=lambda d, c: _num(d, "loan_amount") / _num(d, "property_value") <= c.market.max_ltv,
    ),
    ValidationRule(
        name="dsti_above_max",
        description="Monthly payment above 35% of available income",
        field="loan_amount",
        severity=Severity.WARNING,
        message="Prestação mensal excede 35% do rendimento disponível - considere um montante menor ou prazo maior",
        applies=lambda d, c: (
            (_num(d, "monthly_income") or 0) > 0
            and (_num(d, "loan_amount") or 0) > 0
            and (_num(d, "interest_rate") or 0) > 0
            and (_num(d, "loan_term_years") or 0) > 0
        ),
        check=_dsti_ok,
    ),
    ValidationRule(
        name="age_at_maturity",
        description="Borrower age at maturity above the usual bank maximum",
        field="borrower_age",
        severity=Severity.WARNING,
        message="Idade no fim do empréstimo superior a 75 anos - os bancos podem reduzir o prazo",
        applies=lambda d, c: _num(d, "borrower_age") is not None and _num(d, "loan_term_years") is not None,
        check=lambda d, c: _num(d, "borrower_age") + _num(d, "loan_term_years") <= c.market.max_age_at_maturity,
    ),
]


RENTAL_INVESTMENT_RULES: List[ValidationRule] = [
    required_positive("property_value", "Valor da propriedade é obrigatório e deve ser maior que zero"),
    required_present("location", "Localização é obrigatória"),
    known_region("location"),
    required_positive("monthly_rent", "Renda mensal é obrigatória"),
    ValidationRule(
        name="financing_within_value",
        description="Financing cannot exceed the property value",
        field="financing_amount",
        message="Financiamento não pode exceder o valor do imóvel",
        applies=lambda d, c: _num(d, "financing_amount") is not None and _num(d, "property_value") is not None,
        check=lambda d, c: _num(d, "financing_amount") <= _num(d, "property_value"),
    ),
    ValidationRule(
        name="gross_yield_band",
        description="Gross yield outside the typical 3%-15% band",
        field="monthly_rent",
        severity=Severity.WARNING,
        message="Rentabilidade bruta fora do intervalo típico (3%-15%) - confirme a renda e o valor",
        applies=lambda d, c: (_num(d, "monthly_rent") or 0) > 0 and (_num(d, "property_value") or 0) > 0,
        check=lambda d, c: 0.03 <= _num(d, "monthly_rent") * 12 / _num(d, "property_value") <= 0.15,
    ),
    ValidationRule(
        name="management_fee_high",
        description="Management fee above 15% of rent",
        field="management_fee_rate",
        severity=Severity.WARNING,
        message="Taxa de gestão acima de 15% da renda",
        applies=lambda d, c: _num(d, "management_fee_rate") is not None,
        check=lambda d, c: _num(d, "management_fee_rate") <= 0.15,
    ),
    *property_value_bands(),
]


PROPERTY_FLIP_RULES: List[ValidationRule] = [
    required_positive("property_value", "Preço de compra é obrigatório e deve ser maior que zero"),
    required_present("location", "Localização é obrigatória"),
    known_region("location"),
    required_present("renovation_costs", "Custos de renovação são obrigatórios"),
    required_positive("target_sale_price", "Preço de venda pretendido é obrigatório"),
    ValidationRule(
        name="holding_months_range",
        description="Holding period between 1 and 60 months",
        field="holding_months",
        message="Período de detenção deve estar entre 1 e 60 meses",
        applies=lambda d, c: _num(d, "holding_months") is not None,
        check=lambda d, c: 1 <= _num(d, "holding_months") <= 60,
    ),
    ValidationRule(
        name="financing_within_project_cost",
        description="Financing cannot exceed purchase plus renovation",
        field="financing_amount",
        message="Financiamento não pode exceder o custo de compra e renovação",
        applies=lambda d, c: (_num(d, "financing_amount") or 0) > 0 and _num(d, "property_value") is not None,
        check=lambda d, c: (
            _num(d, "financing_amount")
            <= _num(d, "property_value") + (_num(d, "renovation_costs") or 0)
        ),
    ),
    ValidationRule(
        name="sale_price_covers_cost",
        description="Target sale price below purchase plus renovation",
        field="target_sale_price",
        severity=Severity.WARNING,
        message="Preço de venda inferior ao custo de compra e renovação - operação com prejuízo",
        applies=lambda d, c: _num(d, "target_sale_price") is not None and _num(d, "property_value") is not None,
        check=lambda d, c: (
            _num(d, "target_sale_price")
            >= _num(d, "property_value") + (_num(d, "renovation_costs") or 0)
        ),
    ),
    ValidationRule(
        name="renovation_above_purchase",
        description="Renovation budget above the purchase price",
        field="renovation_costs",
        severity=Severity.WARNING,
        message="Orçamento de renovação superior ao preço de compra - confirme os valores",
        applies=lambda d, c: _num(d, "renovation_costs") is not None and (_num(d, "property_value") or 0) > 0,
        check=lambda d, c: _num(d, "renovation_costs") <= _num(d, "property_value"),
    ),
]


SWITCH_HOUSE_RULES: List[ValidationRule] = [
    required_positive("property_value", "Valor do imóvel atual é obrigatório e deve ser maior que zero"),
    required_present("location", "Localização é obrigatória"),
    known_region("location"),
    known_region("new_location"),
    required_positive("new_property_value", "Valor do novo imóvel é obrigatório"),
    *_mortgage_rules(),
    *_capital_gains_rules(),
    _commission_band("commission_rate"),
    ValidationRule(
        name="new_financing_within_max_ltv",
        description="Banks finance at most 90% of the new property",
        field="new_financing_amount",
        message="Financiamento não pode exceder 90% do valor do novo imóvel",
        applies=lambda d, c: (_num(d, "new_financing_amount") or 0) > 0 and _num(d, "new_property_value") is not None,
        check=lambda d, c: _num(d, "new_financing_amount") <= _num(d, "new_property_value") * c.market.max_ltv,
    ),
    ValidationRule(
        name="bridge_loan_months",
        description="A bridge loan needs a duration",
        field="bridge_loan_months",
        severity=Severity.WARNING,
        message="Crédito ponte sem prazo indicado - o custo não será estimado",
        applies=lambda d, c: _flag(d, "bridge_loan_needed"),
        check=lambda d, c: (_num(d, "bridge_loan_months") or 0) > 0,
    ),
]


VALIDATION_RULES: Dict[CalculatorType, List[ValidationRule]] = {
    CalculatorType.SELL_HOUSE: SELL_HOUSE_RULES,
    CalculatorType.BUY_HOUSE: BUY_HOUSE_RULES,
    CalculatorType.MORTGAGE_SIMULATOR: MORTGAGE_RULES,
    CalculatorType.RENTAL_INVESTMENT: RENTAL_INVESTMENT_RULES,
    CalculatorType.PROPERTY_FLIP: PROPERTY_FLIP_RULES,
    CalculatorType.SWITCH_HOUSE: SWITCH_HOUSE_RULES,
}


# =============================================================================
# PUBLIC API
# =============================================================================

def _structural_errors(model_cls: Type[BaseModel], data: Dict[str, Any]) -> Dict[str, str]:
    """Type and constraint errors from the pydantic model. Missing fields are left to the rules."""
    errors: Dict[str, str] = {}
    try:
        model_cls.model_validate(data)
    except ValidationError as exc:
        for err in exc.errors():
            if err["type"] == "missing":
                continue
            field = str(err["loc"][0]) if err["loc"] else "_root"
            errors.setdefault(field, STRUCTURAL_MESSAGES.get(err["type"], DEFAULT_STRUCTURAL_MESSAGE))
    return errors


def run_rules(
    rules: List[ValidationRule],
    data: Dict[str, Any],
    ctx: RuleContext,
    result: Optional[ValidationResult] = None
) -> ValidationResult:
    """Run rules in order and aggregate errors (first per field wins) and warnings."""
    result = result or ValidationResult()
    for rule in rules:
        passed = rule.evaluate(data, ctx)
        if passed is None or passed:
            continue
        if rule.severity == Severity.ERROR:
            result.errors.setdefault(rule.field, rule.message)
        elif rule.message not in result.warnings:
            result.warnings.append(rule.message)
    return result


def validate(
    calculator_type: Union[CalculatorType, str],
    data: Dict[str, Any],
    today: Optional[date] = None,
    market: MarketData = DEFAULT_MARKET_DATA
) -> ValidationResult:
    """
    Validate raw calculator input.

    Args:
        calculator_type: Which calculator the input is for
        data: Raw (possibly partial) input, already deserialized
        today: Reference date for year checks (defaults to today)
        market: Rate tables used by band checks

    Returns:
        ValidationResult; is_valid is False whenever errors is non-empty
    """
    calculator_type = CalculatorType(calculator_type)
    cleaned = _clean(data or {})
    ctx = RuleContext(today=today or date.today(), market=market)

    result = ValidationResult(errors=_structural_errors(INPUT_MODELS[calculator_type], cleaned))
    return run_rules(VALIDATION_RULES[calculator_type], cleaned, ctx, result)


def parse_input(calculator_type: Union[CalculatorType, str], data: Dict[str, Any]) -> BaseModel:
    """
    Build the typed input model. Call validate() first: this raises
    pydantic.ValidationError on bad data.
    """
    calculator_type = CalculatorType(calculator_type)
    return INPUT_MODELS[calculator_type].model_validate(_clean(data or {}))
