"""
REPT - Cost Calculation Engine
==============================
Core cost calculation engine for Portuguese real-estate transactions.

All calculators are deterministic: no I/O, no clock reads beyond the
injected reference date, identical input gives identical output.
Rates come from the injected MarketData table, never from literals.

Calculators:
1. SellHouseCalculator - commission, mortgage payoff, mais-valias, fees
2. BuyHouseCalculator - IMT, stamp duty, deed, bank fees, insurance
3. MortgageSimulator - French amortisation, total interest, MTIC
4. RentalInvestmentCalculator - yields, operating costs, rental tax
5. PropertyFlipCalculator - buy/renovate/resell profitability
6. SwitchHouseCalculator - sell current home and buy the next one
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from market_constants import (
    CalculatorType,
    DEFAULT_MARKET_DATA,
    ImtSchedule,
    MarketData,
    calculate_imt,
    get_region,
    monthly_payment,
)
from models import (
    BreakdownCategory,
    BreakdownItem,
    BuyHouseInput,
    CalculationResult,
    IntendedUse,
    KeyMetric,
    MetricFormat,
    MortgageInput,
    MortgageRateType,
    PropertyFlipInput,
    RentalInvestmentInput,
    SellHouseInput,
    SwitchHouseInput,
)
from validation import parse_input

logger = logging.getLogger(__name__)


STANDARD_DISCLAIMERS = (
    "Valores são estimativas baseadas em dados médios de mercado",
    "Custos reais podem variar conforme acordos específicos",
    "Consulte um profissional para validação fiscal e legal",
    "Taxas e impostos baseados na legislação portuguesa vigente",
)


def format_eur(value: float) -> str:
    """Format an amount the pt-PT way: €12 000 or €1 234,56."""
    text = f"{abs(value):,.2f}".replace(",", " ").replace(".", ",")
    if text.endswith(",00"):
        text = text[:-3]
    return f"{'-' if value < 0 else ''}€{text}"


def format_pct(rate: float) -> str:
    return f"{rate * 100:.1f}%".replace(".", ",")


# =============================================================================
# BREAKDOWN BUILDER
# =============================================================================

class BreakdownBuilder:
    """
    Collects breakdown lines in insertion order.

    total() is always derived from the lines, so total_costs equals the
    sum of the deduction lines for every calculator.
    """

    def __init__(self):
        self.items: List[BreakdownItem] = []

    def add(
        self,
        item_id: str,
        label: str,
        value: float,
        category: BreakdownCategory,
        description: str = "",
        required: bool = True,
        is_deduction: bool = True
    ) -> float:
        value = round(value, 2)
        self.items.append(BreakdownItem(
            id=item_id,
            label=label,
            value=value,
            category=category,
            required=required,
            is_deduction=is_deduction,
            description=description,
        ))
        return value

    def extend(self, items: List[BreakdownItem], prefix: str = "") -> None:
        """Copy lines from another result, optionally namespacing their ids."""
        for item in items:
            self.items.append(item.model_copy(update={"id": f"{prefix}{item.id}"}))

    def total(self) -> float:
        return round(sum(item.value for item in self.items if item.is_deduction), 2)


def amortisation_schedule(principal: float, annual_rate: float, years: int) -> List[Dict[str, float]]:
    """Yearly totals of a French amortisation loan."""
    payment = monthly_payment(principal, annual_rate, years)
    monthly_rate = annual_rate / 12
    balance = principal
    schedule = []

    for year in range(1, years + 1):
        opening = balance
        interest_paid = 0.0
        principal_paid = 0.0
        for _ in range(12):
            interest = balance * monthly_rate
            amortised = min(balance, payment - interest)
            interest_paid += interest
            principal_paid += amortised
            balance -= amortised
        schedule.append({
            "year": year,
            "opening_balance": round(opening, 2),
            "payment": round(payment * 12, 2),
            "interest": round(interest_paid, 2),
            "principal": round(principal_paid, 2),
            "closing_balance": round(max(0.0, balance), 2),
        })

    return schedule


# =============================================================================
# SELL HOUSE
# =============================================================================

@dataclass
class CapitalGainsOutcome:
    tax: float
    gain: float
    exempt: bool
    ownership_years: int
    description: str


@dataclass
class MortgagePayoff:
    balance: float
    early_termination_fee: float
    description: str

    @property
    def total(self) -> float:
        return self.balance + self.early_termination_fee


class SellHouseCalculator:
    """
    Costs of selling a property in Portugal.

    Order is fixed: commission, mortgage payoff, capital gains,
    legal fees, other costs, aggregation.
    """

    def __init__(self, market: MarketData = DEFAULT_MARKET_DATA, today: Optional[date] = None):
        self.market = market
        self.current_date = today or date.today()

    def calculate(self, inputs: SellHouseInput, reinvestment_share: float = 0.0) -> CalculationResult:
        """
        Run the sell-house calculation.

        Args:
            inputs: Validated sell-house input
            reinvestment_share: Fraction of the gain excluded because the
                proceeds are reinvested in a new main residence (0-1)
        """
        market = self.market
        region = get_region(inputs.location, market)
        builder = BreakdownBuilder()

        # Step 1: Agent commission (no VAT on the seller quote)
        commission_rate = (
            inputs.commission_rate
            if inputs.commission_rate is not None
            else market.selling_commission.average
        )
        commission = builder.add(
            "agent-commission",
            "Comissão Imobiliária",
            inputs.property_value * commission_rate,
            BreakdownCategory.FEE,
            description=(
                f"Comissão de {format_pct(commission_rate)} sobre o valor de venda "
                f"({format_eur(inputs.property_value)})"
            ),
        )

        # Step 2: Mortgage payoff
        payoff = self._mortgage_payoff(inputs)
        if payoff.balance > 0:
            builder.add(
                "mortgage-liquidation",
                "Liquidação de Hipoteca",
                payoff.balance,
                BreakdownCategory.COST,
                description="Montante em dívida do crédito habitação",
            )
        if payoff.early_termination_fee > 0:
            builder.add(
                "early-termination-fee",
                "Taxa Liquidação Antecipada",
                payoff.early_termination_fee,
                BreakdownCategory.FEE,
                description=payoff.description,
            )

        # Step 3: Capital gains (mais-valias)
        gains = self.capital_gains(inputs, reinvestment_share)
        if gains.tax > 0:
            builder.add(
                "capital-gains-tax",
                "Imposto sobre Mais-valias",
                gains.tax,
                BreakdownCategory.TAX,
                description=gains.description,
                required=not gains.exempt,
            )

        # Step 4: Legal fees
        notary, registration, documentation = self._legal_fees(inputs.property_value)
        builder.add(
            "notary-fee", "Taxa de Notário", notary, BreakdownCategory.FEE,
            description="Custos notariais para escritura de venda",
        )
        builder.add(
            "registration-fee", "Registo Predial", registration, BreakdownCategory.FEE,
            description="Taxa de registo da transmissão na Conservatória",
        )
        builder.add(
            "documentation-fee", "Documentação", documentation, BreakdownCategory.COST,
            description="Certidões e documentos necessários",
        )
        legal_fees = round(notary + registration + documentation, 2)

        # Step 5: Other costs
        energy = builder.add(
            "energy-certificate", "Certificado Energético", market.energy_certificate,
            BreakdownCategory.COST,
            description="Certificação energética obrigatória para venda",
        )
        cleaning = builder.add(
            "cleaning-repairs", "Limpeza e Pequenos Arranjos",
            max(market.cleaning_min, inputs.property_value * market.cleaning_rate),
            BreakdownCategory.OTHER,
            description="Preparação do imóvel para apresentação",
        )
        other_costs = round(energy + cleaning, 2)

        # Step 6: Aggregation
        total_costs = builder.total()
        net_proceeds = round(max(0.0, inputs.property_value - total_costs), 2)

        cost_ratio = total_costs / inputs.property_value
        net_ratio = net_proceeds / inputs.property_value

        key_metrics = [
            KeyMetric(label="Valor de Venda", value=inputs.property_value),
            KeyMetric(label="Custos Totais", value=total_costs),
            KeyMetric(label="% de Custos", value=round(cost_ratio, 4), format=MetricFormat.PERCENTAGE),
            KeyMetric(label="% Líquido", value=round(net_ratio, 4), format=MetricFormat.PERCENTAGE),
        ]

        recommendations = self._recommendations(inputs, cost_ratio, commission, payoff, gains)

        logger.debug(
            "sell-house %s: value=%s total=%s net=%s",
            region.code, inputs.property_value, total_costs, net_proceeds
        )

        return CalculationResult(
            calculator_type=CalculatorType.SELL_HOUSE,
            total_costs=total_costs,
            net_proceeds=net_proceeds,
            breakdown=builder.items,
            key_metrics=key_metrics,
            recommendations=recommendations,
            disclaimers=list(STANDARD_DISCLAIMERS),
            details={
                "region": region.code,
                "commission_rate": commission_rate,
                "agent_commission": commission,
                "mortgage_liquidation": round(payoff.total, 2),
                "early_termination_fee": round(payoff.early_termination_fee, 2),
                "capital_gains_amount": round(gains.gain, 2),
                "capital_gains_tax": round(gains.tax, 2),
                "tax_exemption": gains.exempt,
                "ownership_years": gains.ownership_years,
                "legal_fees": legal_fees,
                "other_costs": other_costs,
            },
        )

    def _mortgage_payoff(self, inputs: Union[SellHouseInput, SwitchHouseInput]) -> MortgagePayoff:
        """Outstanding balance plus early-termination fee. Mixed-rate loans pay the variable fee."""
        if not inputs.has_outstanding_mortgage or not inputs.outstanding_mortgage_amount:
            return MortgagePayoff(0.0, 0.0, "Sem hipoteca em curso")

        balance = inputs.outstanding_mortgage_amount
        fees = self.market.early_termination

        if inputs.mortgage_rate_type == MortgageRateType.FIXED:
            fee = balance * fees.fixed_rate
            description = f"Liquidação antecipada: taxa fixa ({format_pct(fees.fixed_rate)})"
        else:
            # Capped regardless of balance
            fee = min(fees.variable_cap, balance * fees.variable_rate)
            description = f"Liquidação antecipada: taxa variável (máx. {format_eur(fees.variable_cap)})"

        return MortgagePayoff(balance, round(fee, 2), description)

    def capital_gains(
        self,
        inputs: Union[SellHouseInput, SwitchHouseInput],
        reinvestment_share: float = 0.0,
        is_main_residence: Optional[bool] = None
    ) -> CapitalGainsOutcome:
        """
        Capital gains tax on the sale.

        The main-residence exemption is all-or-nothing: owned for at least
        capital_gains_exemption_years -> zero tax, otherwise the flat rate.
        """
        if is_main_residence is None:
            is_main_residence = getattr(inputs, "is_main_residence", False)

        ownership_years = (
            self.current_date.year - inputs.year_of_purchase
            if inputs.year_of_purchase
            else 0
        )

        if not inputs.has_capital_gains or not inputs.original_purchase_price:
            return CapitalGainsOutcome(0.0, 0.0, True, ownership_years, "Sem mais-valias a declarar")

        cost_basis = inputs.original_purchase_price + (inputs.improvement_costs or 0)
        gain = max(0.0, inputs.property_value - cost_basis)

        if gain == 0:
            return CapitalGainsOutcome(
                0.0, 0.0, True, ownership_years,
                "Sem ganhos de capital (valor de venda ≤ valor de compra + melhoramentos)"
            )

        exemption_years = self.market.capital_gains_exemption_years
        if is_main_residence and ownership_years >= exemption_years:
            return CapitalGainsOutcome(
                0.0, gain, True, ownership_years,
                f"Isenção: habitação própria permanente há {ownership_years} anos "
                f"(isento a partir de {exemption_years} anos)"
            )

        share = min(1.0, max(0.0, reinvestment_share))
        tax = round(gain * self.market.tax_rates.capital_gains * (1 - share), 2)

        if is_main_residence:
            detail = f"(habitação própria há apenas {ownership_years} anos)"
        else:
            detail = "(não habitação própria)"
        description = (
            f"{format_pct(self.market.tax_rates.capital_gains)} sobre mais-valia de "
            f"{format_eur(gain)} {detail}"
        )
        if share > 0:
            description += f", {format_pct(share)} excluído por reinvestimento"

        return CapitalGainsOutcome(tax, gain, tax == 0, ownership_years, description)

    def _legal_fees(self, property_value: float) -> Tuple[float, float, float]:
        fees = self.market.legal_fees
        notary = min(fees.notary_max, max(fees.notary_min, property_value * fees.notary_rate))
        return notary, fees.registration, fees.documentation

    def _recommendations(
        self,
        inputs: SellHouseInput,
        cost_ratio: float,
        commission: float,
        payoff: MortgagePayoff,
        gains: CapitalGainsOutcome
    ) -> List[str]:
        market = self.market
        recommendations = []

        if cost_ratio > market.high_cost_ratio:
            recommendations.append(
                "Custos elevados (>15%). Considere negociar a comissão imobiliária ou vender diretamente."
            )

        if gains.tax > 0 and inputs.is_main_residence:
            if gains.ownership_years < market.capital_gains_exemption_years:
                wait = market.capital_gains_exemption_years - gains.ownership_years
                recommendations.append(
                    f"Aguardar {wait} anos pode isentar {format_eur(gains.tax)} em impostos."
                )

        if payoff.early_termination_fee > market.high_early_termination_fee:
            recommendations.append(
                "Taxa de liquidação antecipada elevada. Verifique condições contratuais."
            )

        if commission > inputs.property_value * market.high_commission_ratio:
            recommendations.append(
                "Comissão imobiliária acima da média (7%). Considere negociar ou comparar agências."
            )

        recommendations.append("Consulte um profissional para validação dos cálculos fiscais.")
        recommendations.append("Considere o timing da venda para otimização fiscal.")
        return recommendations


# =============================================================================
# BUY HOUSE
# =============================================================================

class BuyHouseCalculator:
    """Acquisition costs: IMT, stamp duty, deed, bank fees and first-year insurance."""

    def __init__(self, market: MarketData = DEFAULT_MARKET_DATA, today: Optional[date] = None):
        self.market = market
        self.current_date = today or date.today()

    def calculate(self, inputs: BuyHouseInput) -> CalculationResult:
        market = self.market
        rates = market.tax_rates
        region = get_region(inputs.location, market)
        builder = BreakdownBuilder()
        value = inputs.property_value

        # Step 1: IMT and acquisition stamp duty
        schedule = (
            ImtSchedule.MAIN_RESIDENCE
            if inputs.intended_use == IntendedUse.MAIN_RESIDENCE
            else ImtSchedule.SECONDARY
        )
        imt_full = calculate_imt(value, schedule, market)
        stamp_full = round(value * rates.stamp_duty_acquisition, 2)
        imt, stamp_duty, young_buyer = self._young_buyer_relief(inputs, imt_full, stamp_full)

        imt_description = (
            "Tabela de habitação própria permanente"
            if schedule == ImtSchedule.MAIN_RESIDENCE
            else "Tabela de habitação secundária / investimento"
        )
        if young_buyer:
            imt_description += " com isenção IMT Jovem"
        builder.add("imt", "IMT", imt, BreakdownCategory.TAX, description=imt_description)
        builder.add(
            "stamp-duty", "Imposto do Selo", stamp_duty, BreakdownCategory.TAX,
            description=f"{format_pct(rates.stamp_duty_acquisition)} sobre o valor de aquisição",
        )

        # Step 2: Deed and registration
        builder.add(
            "casa-pronta", "Escritura e Registo (Casa Pronta)", market.legal_fees.casa_pronta,
            BreakdownCategory.FEE,
            description="Escritura e registo predial num único ato",
        )

        # Step 3: Financing costs
        financing = inputs.financing_amount
        if financing > 0:
            builder.add(
                "loan-stamp-duty", "Imposto do Selo sobre o Crédito",
                financing * rates.stamp_duty_loan, BreakdownCategory.TAX,
                description=f"{format_pct(rates.stamp_duty_loan)} sobre o montante financiado",
            )
            builder.add(
                "bank-valuation", "Avaliação Bancária", market.bank_fees.valuation,
                BreakdownCategory.FEE,
            )
            builder.add(
                "bank-dossier", "Comissão de Dossier", market.bank_fees.dossier,
                BreakdownCategory.FEE,
            )

        # Step 4: Buyer's agent (optional, VAT included)
        if inputs.buyer_commission_rate > 0:
            builder.add(
                "buyer-commission", "Comissão de Consultor do Comprador",
                value * inputs.buyer_commission_rate * (1 + rates.vat),
                BreakdownCategory.FEE,
                description=f"{format_pct(inputs.buyer_commission_rate)} + IVA",
                required=False,
            )

        # Step 5: First-year insurance
        if inputs.include_insurance:
            if financing > 0:
                builder.add(
                    "life-insurance", "Seguro de Vida (1.º ano)",
                    financing * market.insurance.life_annual_on_loan,
                    BreakdownCategory.INSURANCE,
                )
            builder.add(
                "multi-risk-insurance", "Seguro Multirriscos (1.º ano)",
                value * market.insurance.multi_risk_annual_on_value,
                BreakdownCategory.INSURANCE,
            )

        # Step 6: Aggregation
        total_costs = builder.total()
        down_payment = round(max(0.0, value - financing), 2)
        cash_needed = round(max(0.0, value + total_costs - financing), 2)
        cost_ratio = total_costs / value

        recommendations = []
        if young_buyer:
            recommendations.append(
                f"Beneficia do IMT Jovem: poupança de {format_eur(imt_full + stamp_full - imt - stamp_duty)} "
                "em IMT e Imposto do Selo."
            )
        elif (
            inputs.is_first_time_buyer
            and inputs.buyer_age is None
            and inputs.intended_use == IntendedUse.MAIN_RESIDENCE
        ):
            recommendations.append(
                f"Se tiver até {market.young_buyer.max_age} anos, pode beneficiar da isenção IMT Jovem."
            )
        if financing > value * market.typical_ltv:
            recommendations.append(
                "Financiamento acima de 80% do valor: poucos bancos aprovam, prepare uma entrada maior."
            )
        if financing > 0:
            recommendations.append("Compare a TAEG de pelo menos três bancos antes de decidir.")
        recommendations.append("Peça a caderneta predial e a certidão permanente antes do CPCV.")

        logger.debug("buy-house %s: value=%s total=%s", region.code, value, total_costs)

        return CalculationResult(
            calculator_type=CalculatorType.BUY_HOUSE,
            total_costs=total_costs,
            net_proceeds=cash_needed,
            breakdown=builder.items,
            key_metrics=[
                KeyMetric(label="Preço de Compra", value=value),
                KeyMetric(label="Custos de Aquisição", value=total_costs),
                KeyMetric(label="Entrada", value=down_payment),
                KeyMetric(label="Total a Pagar", value=cash_needed),
                KeyMetric(label="% de Custos", value=round(cost_ratio, 4), format=MetricFormat.PERCENTAGE),
            ],
            recommendations=recommendations,
            disclaimers=list(STANDARD_DISCLAIMERS),
            details={
                "region": region.code,
                "imt_schedule": schedule.value,
                "imt": imt,
                "imt_before_exemption": imt_full,
                "stamp_duty": stamp_duty,
                "young_buyer_exemption": young_buyer,
                "loan_amount": financing,
                "down_payment": down_payment,
                "cash_needed": cash_needed,
            },
        )

    def _young_buyer_relief(
        self,
        inputs: BuyHouseInput,
        imt: float,
        stamp_duty: float
    ) -> Tuple[float, float, bool]:
        """
        IMT Jovem: full exemption up to the 4th HPP bracket, reduced IMT and
        regular stamp duty on the excess up to the 5th, nothing above.
        """
        relief = self.market.young_buyer
        eligible = (
            inputs.is_first_time_buyer
            and inputs.buyer_age is not None
            and inputs.buyer_age <= relief.max_age
            and inputs.intended_use == IntendedUse.MAIN_RESIDENCE
        )
        value = inputs.property_value
        if not eligible or value > relief.partial_exemption_limit:
            return imt, stamp_duty, False

        if value <= relief.full_exemption_limit:
            return 0.0, 0.0, True

        excess = value - relief.full_exemption_limit
        return (
            round(excess * relief.excess_imt_rate, 2),
            round(excess * self.market.tax_rates.stamp_duty_acquisition, 2),
            True,
        )


# =============================================================================
# MORTGAGE SIMULATOR
# =============================================================================

class MortgageSimulator:
    """Monthly payment, total interest and lifetime cost of a home loan."""

    def __init__(self, market: MarketData = DEFAULT_MARKET_DATA, today: Optional[date] = None):
        self.market = market
        self.current_date = today or date.today()

    def calculate(self, inputs: MortgageInput) -> CalculationResult:
        market = self.market
        rates = market.tax_rates
        builder = BreakdownBuilder()
        loan = inputs.loan_amount
        years = inputs.loan_term_years

        payment = monthly_payment(loan, inputs.interest_rate, years)
        schedule = amortisation_schedule(loan, inputs.interest_rate, years)
        total_paid = payment * years * 12
        total_interest = max(0.0, total_paid - loan)

        builder.add(
            "total-interest", "Juros Totais", total_interest, BreakdownCategory.COST,
            description=f"Taxa anual de {format_pct(inputs.interest_rate)} durante {years} anos",
        )
        builder.add(
            "loan-stamp-duty", "Imposto do Selo sobre o Crédito",
            loan * rates.stamp_duty_loan, BreakdownCategory.TAX,
            description=f"{format_pct(rates.stamp_duty_loan)} sobre o capital",
        )
        builder.add(
            "interest-stamp-duty", "Imposto do Selo sobre Juros",
            total_interest * rates.stamp_duty_interest, BreakdownCategory.TAX,
            description=f"{format_pct(rates.stamp_duty_interest)} sobre os juros pagos",
        )
        builder.add("bank-valuation", "Avaliação Bancária", market.bank_fees.valuation, BreakdownCategory.FEE)
        builder.add("bank-dossier", "Comissão de Dossier", market.bank_fees.dossier, BreakdownCategory.FEE)

        monthly_insurance = 0.0
        if inputs.include_insurance:
            # Life premium follows the outstanding balance
            life = sum(row["opening_balance"] for row in schedule) * market.insurance.life_annual_on_loan
            multi_risk = inputs.property_value * market.insurance.multi_risk_annual_on_value * years
            builder.add("life-insurance", "Seguro de Vida", life, BreakdownCategory.INSURANCE)
            builder.add("multi-risk-insurance", "Seguro Multirriscos", multi_risk, BreakdownCategory.INSURANCE)
            monthly_insurance = (
                loan * market.insurance.life_annual_on_loan
                + inputs.property_value * market.insurance.multi_risk_annual_on_value
            ) / 12

        total_costs = builder.total()
        ltv = loan / inputs.property_value
        mtic = round(loan + total_costs, 2)

        dsti = None
        if inputs.monthly_income:
            available = inputs.monthly_income - inputs.monthly_expenses
            dsti = round((payment + monthly_insurance) / available, 4) if available > 0 else None

        recommendations = []
        if ltv > market.typical_ltv:
            recommendations.append(
                "LTV acima de 80%: espere spreads mais altos e exigência de garantias adicionais."
            )
        if dsti is not None and dsti > market.max_dsti:
            recommendations.append(
                "Taxa de esforço acima de 35%: considere um prazo maior ou um montante inferior."
            )
        if inputs.mortgage_rate_type == MortgageRateType.VARIABLE:
            recommendations.append(
                f"Taxa variável: a prestação acompanha a Euribor (12M atual: {format_pct(market.euribor.rate_12m)})."
            )
        elif inputs.mortgage_rate_type == MortgageRateType.MIXED:
            recommendations.append("Taxa mista: confirme quando termina o período de taxa fixa.")
        if years > 40:
            recommendations.append("Prazos acima de 40 anos aumentam significativamente os juros pagos.")
        recommendations.append("Compare a TAEG e o MTIC da FINE de vários bancos.")

        first_year = schedule[0] if schedule else {"interest": 0.0, "principal": 0.0}

        details: Dict[str, Any] = {
            "monthly_payment": round(payment, 2),
            "monthly_insurance": round(monthly_insurance, 2),
            "total_paid": round(total_paid, 2),
            "total_interest": round(total_interest, 2),
            "mtic": mtic,
            "ltv": round(ltv, 4),
            "first_year_interest": first_year["interest"],
            "first_year_principal": first_year["principal"],
            "schedule": schedule,
        }
        if dsti is not None:
            details["dsti"] = dsti

        key_metrics = [
            KeyMetric(label="Prestação Mensal", value=round(payment, 2)),
            KeyMetric(label="Juros Totais", value=round(total_interest, 2)),
            KeyMetric(label="MTIC", value=mtic),
            KeyMetric(label="LTV", value=round(ltv, 4), format=MetricFormat.PERCENTAGE),
        ]
        if dsti is not None:
            key_metrics.append(KeyMetric(label="Taxa de Esforço", value=dsti, format=MetricFormat.PERCENTAGE))

        logger.debug("mortgage: loan=%s payment=%.2f total=%s", loan, payment, total_costs)

        return CalculationResult(
            calculator_type=CalculatorType.MORTGAGE_SIMULATOR,
            total_costs=total_costs,
            net_proceeds=round(loan, 2),
            breakdown=builder.items,
            key_metrics=key_metrics,
            recommendations=recommendations,
            disclaimers=list(STANDARD_DISCLAIMERS),
            details=details,
        )


# =============================================================================
# RENTAL INVESTMENT
# =============================================================================

class RentalInvestmentCalculator:
    """First-year economics of a buy-to-let."""

    def __init__(self, market: MarketData = DEFAULT_MARKET_DATA, today: Optional[date] = None):
        self.market = market
        self.current_date = today or date.today()

    def calculate(self, inputs: RentalInvestmentInput) -> CalculationResult:
        market = self.market
        rates = market.tax_rates
        value = inputs.property_value
        builder = BreakdownBuilder()

        # Step 1: Acquisition (investment schedule)
        purchase = BuyHouseCalculator(self.market, self.current_date).calculate(BuyHouseInput(
            property_value=value,
            location=inputs.location,
            is_first_time_buyer=False,
            intended_use=IntendedUse.INVESTMENT,
            financing_amount=inputs.financing_amount,
        ))
        builder.extend(purchase.breakdown)
        if inputs.improvement_costs > 0:
            builder.add(
                "improvement-costs", "Obras Iniciais", inputs.improvement_costs, BreakdownCategory.COST
            )
        acquisition_costs = round(purchase.total_costs + inputs.improvement_costs, 2)

        # Step 2: Operating costs (first year)
        annual_rent = inputs.monthly_rent * 12
        vacancy = builder.add(
            "vacancy-loss", "Perda por Vacância", annual_rent * inputs.vacancy_rate, BreakdownCategory.COST,
            description=f"{format_pct(inputs.vacancy_rate)} da renda anual",
        )
        effective_rent = annual_rent - vacancy
        operating = [
            builder.add(
                "management-fee", "Gestão do Arrendamento",
                effective_rent * inputs.management_fee_rate, BreakdownCategory.FEE,
            ),
            builder.add(
                "imi", "IMI", value * rates.imi, BreakdownCategory.TAX,
                description="Imposto Municipal sobre Imóveis (estimativa sobre o valor de compra)",
            ),
            builder.add(
                "condominium", "Condomínio", inputs.monthly_condominium * 12, BreakdownCategory.COST
            ),
            builder.add(
                "building-insurance", "Seguro Multirriscos",
                value * market.insurance.multi_risk_annual_on_value, BreakdownCategory.INSURANCE,
            ),
            builder.add(
                "maintenance", "Manutenção",
                inputs.annual_maintenance
                if inputs.annual_maintenance is not None
                else value * market.maintenance_rate,
                BreakdownCategory.COST,
            ),
        ]
        operating_costs = round(sum(operating), 2)
        noi = effective_rent - operating_costs

        # Step 3: Rental income tax (Categoria F); interest is not deductible
        rental_tax = max(0.0, noi) * rates.rental_income
        if rental_tax > 0:
            rental_tax = builder.add(
                "rental-income-tax", "IRS sobre Rendimentos Prediais", rental_tax, BreakdownCategory.TAX,
                description=f"Taxa autónoma de {format_pct(rates.rental_income)}",
            )

        # Step 4: Financing
        interest = 0.0
        debt_service = 0.0
        if inputs.financing_amount > 0:
            schedule = amortisation_schedule(
                inputs.financing_amount, inputs.interest_rate, inputs.loan_term_years
            )
            interest = builder.add(
                "mortgage-interest", "Juros do Crédito (1.º ano)", schedule[0]["interest"], BreakdownCategory.COST
            )
            debt_service = schedule[0]["payment"]

        total_costs = builder.total()
        net_income = noi - rental_tax - interest
        cash_flow = noi - rental_tax - debt_service
        cash_invested = value - inputs.financing_amount + acquisition_costs

        gross_yield = annual_rent / value
        net_yield = (noi - rental_tax) / (value + acquisition_costs)
        cash_on_cash = cash_flow / cash_invested if cash_invested > 0 else 0.0
        payback_years = round(cash_invested / cash_flow, 1) if cash_flow > 0 else None

        recommendations = []
        if gross_yield < market.low_gross_yield:
            recommendations.append(
                f"Rentabilidade bruta abaixo de {format_pct(market.low_gross_yield)}: "
                "o preço pode estar elevado para a renda."
            )
        if cash_flow < 0:
            recommendations.append(
                "Cash flow negativo: a renda não cobre a prestação e os custos. Reveja o financiamento."
            )
        if net_yield >= market.good_net_yield:
            recommendations.append(
                f"Rentabilidade líquida acima de {format_pct(market.good_net_yield)}: investimento interessante."
            )
        if inputs.management_fee_rate == 0:
            recommendations.append("Considere o tempo de gestão própria ou uma empresa de gestão (8%-12%).")
        recommendations.append(
            "Contratos de longa duração podem beneficiar de taxas de IRS reduzidas sobre as rendas."
        )

        logger.debug("rental %s: gross=%.4f net=%.4f", inputs.location, gross_yield, net_yield)

        return CalculationResult(
            calculator_type=CalculatorType.RENTAL_INVESTMENT,
            total_costs=total_costs,
            net_proceeds=round(max(0.0, net_income), 2),
            breakdown=builder.items,
            key_metrics=[
                KeyMetric(label="Rentabilidade Bruta", value=round(gross_yield, 4), format=MetricFormat.PERCENTAGE),
                KeyMetric(label="Rentabilidade Líquida", value=round(net_yield, 4), format=MetricFormat.PERCENTAGE),
                KeyMetric(label="Cash-on-Cash", value=round(cash_on_cash, 4), format=MetricFormat.PERCENTAGE),
                KeyMetric(label="Cash Flow Anual", value=round(cash_flow, 2)),
            ],
            recommendations=recommendations,
            disclaimers=list(STANDARD_DISCLAIMERS),
            details={
                "acquisition_costs": acquisition_costs,
                "annual_rent": round(annual_rent, 2),
                "effective_rent": round(effective_rent, 2),
                "operating_costs": operating_costs,
                "net_operating_income": round(noi, 2),
                "rental_income_tax": round(rental_tax, 2),
                "first_year_interest": round(interest, 2),
                "annual_debt_service": round(debt_service, 2),
                "net_income": round(net_income, 2),
                "cash_flow": round(cash_flow, 2),
                "cash_invested": round(cash_invested, 2),
                "gross_yield": round(gross_yield, 4),
                "net_yield": round(net_yield, 4),
                "cash_on_cash": round(cash_on_cash, 4),
                "payback_years": payback_years,
            },
        )


# =============================================================================
# PROPERTY FLIP
# =============================================================================

class PropertyFlipCalculator:
    """Buy, renovate and resell."""

    def __init__(self, market: MarketData = DEFAULT_MARKET_DATA, today: Optional[date] = None):
        self.market = market
        self.current_date = today or date.today()

    def calculate(self, inputs: PropertyFlipInput) -> CalculationResult:
        market = self.market
        rates = market.tax_rates
        price = inputs.property_value
        builder = BreakdownBuilder()

        # Step 1: Purchase costs
        purchase = BuyHouseCalculator(self.market, self.current_date).calculate(BuyHouseInput(
            property_value=price,
            location=inputs.location,
            is_first_time_buyer=False,
            intended_use=IntendedUse.INVESTMENT,
            financing_amount=inputs.financing_amount,
        ))
        builder.extend(purchase.breakdown)

        # Step 2: Works and holding
        builder.add("renovation", "Obras de Renovação", inputs.renovation_costs, BreakdownCategory.COST)
        if inputs.monthly_holding_costs > 0:
            builder.add(
                "holding-costs", "Custos de Detenção",
                inputs.monthly_holding_costs * inputs.holding_months, BreakdownCategory.COST,
                description=f"{inputs.holding_months} meses",
            )
        if inputs.financing_amount > 0:
            builder.add(
                "financing-interest", "Juros do Financiamento",
                inputs.financing_amount * inputs.interest_rate * inputs.holding_months / 12,
                BreakdownCategory.COST,
                description=f"{format_pct(inputs.interest_rate)} durante {inputs.holding_months} meses",
            )

        # Step 3: Sale costs (agent commission + VAT)
        commission_rate = (
            inputs.sale_commission_rate
            if inputs.sale_commission_rate is not None
            else market.selling_commission.average
        )
        builder.add(
            "sale-commission", "Comissão de Venda",
            inputs.target_sale_price * commission_rate * (1 + rates.vat), BreakdownCategory.FEE,
            description=f"{format_pct(commission_rate)} + IVA sobre o preço de venda",
        )
        builder.add(
            "energy-certificate", "Certificado Energético", market.energy_certificate, BreakdownCategory.COST
        )

        # Step 4: Tax on the profit
        profit_before_tax = inputs.target_sale_price - price - builder.total()
        tax = 0.0
        if profit_before_tax > 0:
            tax = builder.add(
                "capital-gains-tax", "Imposto sobre Mais-valias",
                profit_before_tax * rates.capital_gains, BreakdownCategory.TAX,
                description=f"{format_pct(rates.capital_gains)} sobre o lucro",
            )

        total_costs = builder.total()
        profit = inputs.target_sale_price - price - total_costs
        invested = price + total_costs - tax
        roi = profit / invested
        annualised_roi = (1 + roi) ** (12 / inputs.holding_months) - 1 if roi > -1 else -1.0
        margin = profit / inputs.target_sale_price
        max_purchase = inputs.target_sale_price * market.flip_max_purchase_ratio - inputs.renovation_costs

        recommendations = []
        if profit <= 0:
            recommendations.append("Operação com prejuízo: reveja o preço de compra ou o orçamento de obras.")
        elif margin < market.thin_flip_margin:
            recommendations.append(
                f"Margem abaixo de {format_pct(market.thin_flip_margin)}: "
                "pouca folga para derrapagens de obra ou prazo."
            )
        if price > max_purchase:
            recommendations.append(
                f"Preço acima da regra dos 70%: o máximo recomendado seria {format_eur(max(0.0, max_purchase))}."
            )
        else:
            recommendations.append("Preço de compra dentro da regra dos 70%.")
        if inputs.holding_months > 12:
            recommendations.append("Detenção superior a 12 meses reduz a rentabilidade anualizada.")
        recommendations.append("Inclua uma reserva de 10%-15% para imprevistos nas obras.")

        logger.debug("flip %s: profit=%.2f roi=%.4f", inputs.location, profit, roi)

        return CalculationResult(
            calculator_type=CalculatorType.PROPERTY_FLIP,
            total_costs=total_costs,
            net_proceeds=round(max(0.0, profit), 2),
            breakdown=builder.items,
            key_metrics=[
                KeyMetric(label="Lucro Líquido", value=round(profit, 2)),
                KeyMetric(label="ROI", value=round(roi, 4), format=MetricFormat.PERCENTAGE),
                KeyMetric(label="ROI Anualizado", value=round(annualised_roi, 4), format=MetricFormat.PERCENTAGE),
                KeyMetric(label="Margem", value=round(margin, 4), format=MetricFormat.PERCENTAGE),
            ],
            recommendations=recommendations,
            disclaimers=list(STANDARD_DISCLAIMERS),
            details={
                "purchase_costs": purchase.total_costs,
                "profit_before_tax": round(profit_before_tax, 2),
                "capital_gains_tax": round(tax, 2),
                "profit": round(profit, 2),
                "total_investment": round(invested, 2),
                "roi": round(roi, 4),
                "annualised_roi": round(annualised_roi, 4),
                "margin": round(margin, 4),
                "max_purchase_price": round(max_purchase, 2),
                "meets_70_rule": price <= max_purchase,
            },
        )


# =============================================================================
# SWITCH HOUSE
# =============================================================================

class SwitchHouseCalculator:
    """Sell the current main residence and buy the next one."""

    def __init__(self, market: MarketData = DEFAULT_MARKET_DATA, today: Optional[date] = None):
        self.market = market
        self.current_date = today or date.today()

    def calculate(self, inputs: SwitchHouseInput) -> CalculationResult:
        builder = BreakdownBuilder()

        # Step 1: Sale of the current home, with reinvestment relief
        reinvestment_share = 0.0
        if inputs.new_is_main_residence and inputs.has_capital_gains:
            reinvestment_share = min(1.0, inputs.new_property_value / inputs.property_value)

        sale = SellHouseCalculator(self.market, self.current_date).calculate(
            SellHouseInput(
                property_value=inputs.property_value,
                location=inputs.location,
                has_outstanding_mortgage=inputs.has_outstanding_mortgage,
                outstanding_mortgage_amount=inputs.outstanding_mortgage_amount,
                mortgage_rate_type=inputs.mortgage_rate_type,
                has_capital_gains=inputs.has_capital_gains,
                original_purchase_price=inputs.original_purchase_price,
                improvement_costs=inputs.improvement_costs,
                year_of_purchase=inputs.year_of_purchase,
                is_main_residence=True,
                commission_rate=inputs.commission_rate,
            ),
            reinvestment_share=reinvestment_share,
        )
        builder.extend(sale.breakdown, prefix="sale-")

        # Step 2: Purchase of the new home
        purchase = BuyHouseCalculator(self.market, self.current_date).calculate(BuyHouseInput(
            property_value=inputs.new_property_value,
            location=inputs.new_location or inputs.location,
            is_first_time_buyer=False,
            has_existing_property=True,
            intended_use=(
                IntendedUse.MAIN_RESIDENCE if inputs.new_is_main_residence else IntendedUse.SECONDARY
            ),
            buyer_age=inputs.buyer_age,
            financing_amount=inputs.new_financing_amount,
            include_insurance=inputs.include_insurance,
        ))
        builder.extend(purchase.breakdown, prefix="purchase-")
        cash_needed = purchase.details["cash_needed"]

        # Step 3: Bridge loan covering the purchase until the sale closes
        bridge_interest = 0.0
        if inputs.bridge_loan_needed and inputs.bridge_loan_months > 0:
            bridge_interest = builder.add(
                "bridge-loan-interest", "Juros do Crédito Ponte",
                cash_needed * inputs.bridge_loan_rate * inputs.bridge_loan_months / 12,
                BreakdownCategory.COST,
                description=f"{format_pct(inputs.bridge_loan_rate)} durante {inputs.bridge_loan_months} meses",
            )

        total_costs = builder.total()
        balance = sale.net_proceeds - cash_needed - bridge_interest
        shortfall = round(max(0.0, -balance), 2)
        # Relief only matters when the ownership exemption did not already apply
        relief_applied = (
            reinvestment_share > 0
            and sale.details["capital_gains_amount"] > 0
            and sale.details["ownership_years"] < self.market.capital_gains_exemption_years
        )
        exempt_gain = sale.details["capital_gains_amount"] * reinvestment_share if relief_applied else 0.0

        recommendations = []
        if shortfall > 0:
            recommendations.append(
                f"Faltam {format_eur(shortfall)} para concretizar a troca: considere aumentar o financiamento."
            )
        if relief_applied:
            recommendations.append(
                f"Reinvestimento na nova habitação própria exclui {format_pct(reinvestment_share)} das mais-valias."
            )
        if inputs.bridge_loan_needed:
            recommendations.append("Negocie prazos de escritura próximos para reduzir o custo do crédito ponte.")
        recommendations.append("Declare a intenção de reinvestimento na declaração de IRS do ano da venda.")

        logger.debug("switch-house: sale_net=%s cash_needed=%s", sale.net_proceeds, cash_needed)

        return CalculationResult(
            calculator_type=CalculatorType.SWITCH_HOUSE,
            total_costs=total_costs,
            net_proceeds=round(max(0.0, balance), 2),
            breakdown=builder.items,
            key_metrics=[
                KeyMetric(label="Líquido da Venda", value=sale.net_proceeds),
                KeyMetric(label="Necessário para a Compra", value=cash_needed),
                KeyMetric(label="Saldo Final", value=round(balance, 2)),
            ],
            recommendations=recommendations,
            disclaimers=list(STANDARD_DISCLAIMERS),
            details={
                "sale_total_costs": sale.total_costs,
                "sale_net_proceeds": sale.net_proceeds,
                "purchase_total_costs": purchase.total_costs,
                "purchase_cash_needed": cash_needed,
                "capital_gains_tax": sale.details["capital_gains_tax"],
                "reinvestment_share": round(reinvestment_share, 4),
                "reinvestment_exempt_gain": round(exempt_gain, 2),
                "bridge_loan_interest": round(bridge_interest, 2),
                "shortfall": shortfall,
            },
        )


# =============================================================================
# DISPATCH
# =============================================================================

CALCULATORS = {
    CalculatorType.SELL_HOUSE: SellHouseCalculator,
    CalculatorType.BUY_HOUSE: BuyHouseCalculator,
    CalculatorType.MORTGAGE_SIMULATOR: MortgageSimulator,
    CalculatorType.RENTAL_INVESTMENT: RentalInvestmentCalculator,
    CalculatorType.PROPERTY_FLIP: PropertyFlipCalculator,
    CalculatorType.SWITCH_HOUSE: SwitchHouseCalculator,
}


def calculate(
    calculator_type: Union[CalculatorType, str],
    inputs: Union[BaseModel, Dict[str, Any]],
    market: MarketData = DEFAULT_MARKET_DATA,
    today: Optional[date] = None
) -> CalculationResult:
    """
    Run one calculator.

    Raw dicts are parsed into the typed input model first; validate them
    with validation.validate() beforehand.
    """
    calculator_type = CalculatorType(calculator_type)
    if isinstance(inputs, dict):
        inputs = parse_input(calculator_type, inputs)
    return CALCULATORS[calculator_type](market=market, today=today).calculate(inputs)
