"""
VAT Engine - Zambian VAT arithmetic for invoices.

Pure functions with no I/O.  Rates are percentages (16 means 16%); the
``EXEMPT`` sentinel (-1) marks VAT-exempt supplies, which carry no VAT but are
reported separately from zero-rated ones.

Usage:
    from decimal import Decimal
    from smefin_engines.vat import VatCalculator, InvoiceLine

    calc = VatCalculator()
    result = calc.calculate_vat(Decimal("100.00"))
    print(result.vat_amount)   # 16.00
    print(result.total)        # 116.00

    totals = calc.calculate_invoice_totals(
        [InvoiceLine(quantity=Decimal("2"), unit_price=Decimal("50.00"))],
        invoice_discount=Decimal("10.00"),
    )
    print(totals.grand_total)  # 104.40
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from smefin_kernel.logging_config import get_logger

logger = get_logger("engines.vat")

STANDARD_RATE = Decimal("16")
ZERO_RATED = Decimal("0")
EXEMPT = Decimal("-1")
MAX_CUSTOM_RATE = Decimal("25")

VAT_EXEMPT_CATEGORIES: frozenset[str] = frozenset({
    "financial_services",
    "insurance",
    "education",
    "healthcare",
    "residential_rent",
    "public_transport",
    "postal_services",
})

ZERO_RATED_CATEGORIES: frozenset[str] = frozenset({
    "exports",
    "basic_foodstuffs",
    "agricultural_inputs",
    "medical_supplies",
    "educational_materials",
})

_CENT = Decimal("0.01")
_MILLI = Decimal("0.001")
_HUNDRED = Decimal("100")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def round_quantity(value: Decimal) -> Decimal:
    return value.quantize(_MILLI, rounding=ROUND_HALF_UP)


def describe_rate(rate: Decimal) -> str:
    if rate == EXEMPT:
        return "VAT Exempt"
    if rate == ZERO_RATED:
        return "Zero Rated"
    return f"{rate.normalize():f}% VAT"


@dataclass(frozen=True)
class VatResult:
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal
    vat_rate: Decimal
    is_vat_inclusive: bool


@dataclass(frozen=True)
class InvoiceLine:
    """One invoice line as entered.  ``vat_rate`` None means standard rate."""

    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal | None = None
    discount_rate: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class LineCalculation:
    quantity: Decimal
    unit_price: Decimal
    line_subtotal: Decimal
    discount_amount: Decimal
    line_total: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    line_total_with_vat: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    total_discount_amount: Decimal
    subtotal_after_discount: Decimal
    total_vat_amount: Decimal
    grand_total: Decimal
    lines: tuple[LineCalculation, ...] = ()


@dataclass(frozen=True)
class VatBreakdownEntry:
    vat_rate: Decimal
    taxable_amount: Decimal
    vat_amount: Decimal
    description: str


@dataclass(frozen=True)
class InvoiceValidation:
    is_valid: bool
    calculated_subtotal: Decimal
    calculated_vat_amount: Decimal
    calculated_total: Decimal
    errors: tuple[str, ...] = field(default_factory=tuple)


class VatCalculator:
    """
    Stateless VAT calculator.

    All money results are rounded half-up to 2 decimal places, quantities to
    3.  Exempt and zero-rated amounts pass through untaxed.
    """

    def calculate_vat(
        self,
        amount: Decimal,
        rate: Decimal = STANDARD_RATE,
        inclusive: bool = False,
    ) -> VatResult:
        """Add VAT to a net amount, or extract it from a gross one."""
        if rate <= ZERO_RATED:
            return VatResult(
                subtotal=round_money(amount),
                vat_amount=Decimal("0.00"),
                total=round_money(amount),
                vat_rate=ZERO_RATED,
                is_vat_inclusive=inclusive,
            )

        if inclusive:
            total = amount
            subtotal = amount / (1 + rate / _HUNDRED)
            vat_amount = total - subtotal
        else:
            subtotal = amount
            vat_amount = amount * rate / _HUNDRED
            total = amount + vat_amount

        return VatResult(
            subtotal=round_money(subtotal),
            vat_amount=round_money(vat_amount),
            total=round_money(total),
            vat_rate=rate,
            is_vat_inclusive=inclusive,
        )

    def calculate_line_item(self, line: InvoiceLine) -> LineCalculation:
        """Discount first (a rate wins over a fixed amount), then VAT."""
        rate = STANDARD_RATE if line.vat_rate is None else line.vat_rate
        line_subtotal = line.quantity * line.unit_price

        discount = line.discount_amount
        if line.discount_rate > 0:
            discount = line_subtotal * line.discount_rate / _HUNDRED

        line_total = line_subtotal - discount
        vat = self.calculate_vat(line_total, rate)

        return LineCalculation(
            quantity=round_quantity(line.quantity),
            unit_price=round_money(line.unit_price),
            line_subtotal=round_money(line_subtotal),
            discount_amount=round_money(discount),
            line_total=round_money(line_total),
            vat_rate=rate,
            vat_amount=vat.vat_amount,
            line_total_with_vat=vat.total,
        )

    def calculate_invoice_totals(
        self,
        lines: Sequence[InvoiceLine],
        invoice_discount: Decimal = Decimal("0"),
    ) -> InvoiceTotals:
        """Totals for an invoice.

        An invoice-level discount is spread over the lines in proportion to
        their totals before VAT is recomputed per line.
        """
        calculated = [self.calculate_line_item(line) for line in lines]
        subtotal = sum((c.line_total for c in calculated), Decimal("0"))
        item_discounts = sum((c.discount_amount for c in calculated), Decimal("0"))

        if invoice_discount > 0 and subtotal > 0:
            total_vat = Decimal("0")
            for c in calculated:
                share = c.line_total / subtotal
                discounted = c.line_total - invoice_discount * share
                total_vat += self.calculate_vat(discounted, c.vat_rate).vat_amount
        else:
            total_vat = sum((c.vat_amount for c in calculated), Decimal("0"))

        subtotal_after_discount = subtotal - invoice_discount
        grand_total = subtotal_after_discount + total_vat

        logger.debug(
            "invoice_totals_calculated",
            extra={
                "line_count": len(calculated),
                "subtotal": subtotal,
                "total_vat": total_vat,
            },
        )

        return InvoiceTotals(
            subtotal=round_money(subtotal),
            total_discount_amount=round_money(item_discounts + invoice_discount),
            subtotal_after_discount=round_money(subtotal_after_discount),
            total_vat_amount=round_money(total_vat),
            grand_total=round_money(grand_total),
            lines=tuple(calculated),
        )

    def vat_breakdown(self, lines: Sequence[LineCalculation]) -> list[VatBreakdownEntry]:
        """Taxable amount and VAT grouped by rate, in first-seen rate order."""
        taxable: dict[Decimal, Decimal] = defaultdict(Decimal)
        vat: dict[Decimal, Decimal] = defaultdict(Decimal)
        for line in lines:
            taxable[line.vat_rate] += line.line_total
            vat[line.vat_rate] += line.vat_amount
        return [
            VatBreakdownEntry(
                vat_rate=rate,
                taxable_amount=round_money(taxable[rate]),
                vat_amount=round_money(vat[rate]),
                description=describe_rate(rate),
            )
            for rate in taxable
        ]

    def validate_rate(self, rate: Decimal) -> bool:
        """Standard, zero-rated, exempt, or a custom rate between 0 and 25."""
        if rate in (STANDARD_RATE, ZERO_RATED, EXEMPT):
            return True
        return ZERO_RATED <= rate <= MAX_CUSTOM_RATE

    def rate_for_category(self, category: str) -> Decimal:
        if category in VAT_EXEMPT_CATEGORIES:
            return EXEMPT
        if category in ZERO_RATED_CATEGORIES:
            return ZERO_RATED
        return STANDARD_RATE

    def validate_invoice_totals(
        self,
        lines: Sequence[LineCalculation],
        subtotal: Decimal,
        vat_amount: Decimal,
        total: Decimal,
        tolerance: Decimal = _CENT,
    ) -> InvoiceValidation:
        """Recompute totals from lines and compare with the stated figures."""
        calc_subtotal = sum((line.line_total for line in lines), Decimal("0"))
        calc_vat = sum((line.vat_amount for line in lines), Decimal("0"))
        calc_total = calc_subtotal + calc_vat

        errors = []
        if abs(calc_subtotal - subtotal) > tolerance:
            errors.append(
                f"Subtotal mismatch: calculated {calc_subtotal}, provided {subtotal}"
            )
        if abs(calc_vat - vat_amount) > tolerance:
            errors.append(
                f"VAT amount mismatch: calculated {calc_vat}, provided {vat_amount}"
            )
        if abs(calc_total - total) > tolerance:
            errors.append(
                f"Total amount mismatch: calculated {calc_total}, provided {total}"
            )

        return InvoiceValidation(
            is_valid=not errors,
            calculated_subtotal=round_money(calc_subtotal),
            calculated_vat_amount=round_money(calc_vat),
            calculated_total=round_money(calc_total),
            errors=tuple(errors),
        )
