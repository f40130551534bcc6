"""
Customs value (CAF) and import tax calculation.

Pure arithmetic, no model involved. Amounts are computed in Decimal and
each tax is rounded up to the whole dirham, as on a customs declaration.
"""

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Optional

from customs_intel.schemas.tax import CAFRequest, CAFResult, TaxBreakdown, TaxLine, TaxRequest

# Reference rates (MAD per unit), used when the caller supplies none
EXCHANGE_RATES: dict[str, float] = {
    "MAD": 1, "USD": 10.2, "EUR": 10.85, "GBP": 12.8, "CNY": 1.4,
    "AED": 2.78, "SAR": 2.72, "CAD": 7.5, "CHF": 11.5, "JPY": 0.068, "KRW": 0.0076,
}

DEFAULT_TPF_RATE = 0.25
FLAT_INSURANCE_RATE = Decimal("0.005")
MRE_DUTY_SHARE = Decimal("0.10")

_INCLUDES_FREIGHT_AND_INSURANCE = ("CIF", "CIP")
_INCLUDES_FREIGHT = ("CFR", "CPT")

_HUNDRED = Decimal(100)


def _d(value: Optional[float]) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(0)


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _round2(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _fmt(value) -> str:
    return f"{float(value):,.0f}".replace(",", " ")


def resolve_exchange_rate(currency: str, exchange_rate: Optional[float] = None) -> float:
    if exchange_rate is not None:
        return exchange_rate
    rate = EXCHANGE_RATES.get(currency.upper())
    if rate is None:
        raise ValueError(f"No reference exchange rate for {currency}; pass exchange_rate")
    return rate


def calculate_caf(request: CAFRequest) -> CAFResult:
    """
    Customs value in MAD: goods value plus freight and insurance the
    incoterm does not already include. Missing insurance is charged at a
    flat 0.5%.
    """
    currency = request.currency.upper()
    incoterm = request.incoterm.upper()
    rate = resolve_exchange_rate(currency, request.exchange_rate)
    value = _d(request.value)
    caf = value
    details = []

    if incoterm in _INCLUDES_FREIGHT_AND_INSURANCE:
        details.append(f"Valeur {incoterm}: {_fmt(value)} {currency} (fret + assurance inclus)")
    elif incoterm in _INCLUDES_FREIGHT:
        insurance = _d(request.insurance) if request.insurance is not None else value * FLAT_INSURANCE_RATE
        caf += insurance
        details.append(f"Valeur {incoterm}: {_fmt(value)} {currency}")
        details.append(
            f"Assurance: {_fmt(insurance)} {currency}"
            + ("" if request.insurance is not None else " (forfait 0.5%)")
        )
    else:
        freight = _d(request.freight)
        insurance = (
            _d(request.insurance) if request.insurance is not None
            else (value + freight) * FLAT_INSURANCE_RATE
        )
        caf += freight + insurance
        details.append(f"Valeur {incoterm}: {_fmt(value)} {currency}")
        if freight > 0:
            details.append(f"Fret: {_fmt(freight)} {currency}")
        details.append(
            f"Assurance: {_fmt(insurance)} {currency}"
            + ("" if request.insurance is not None else " (forfait 0.5%)")
        )

    caf_mad = _ceil(caf * _d(rate))
    details.append(f"Taux de change: 1 {currency} = {rate} MAD")
    details.append(f"Valeur en douane (CAF): {_fmt(caf_mad)} MAD")
    return CAFResult(caf_mad=caf_mad, exchange_rate=rate, details=details)


def calculate_taxes(request: TaxRequest) -> TaxBreakdown:
    """
    Import duty (DI), parafiscal tax (TPF), optional consumption tax (TIC),
    then VAT on CAF + DI + TPF + TIC.

    agreement_reduction is the fraction of DI waived by a trade agreement
    (1.0 = full exemption). The MRE abatement charges 10% of the DI rate and
    waives TPF.
    """
    caf = _d(request.caf_mad)
    duty_rate = _d(request.duty_rate)
    vat_rate = _d(request.vat_rate)
    tpf_rate = _d(request.tpi_rate if request.tpi_rate is not None else DEFAULT_TPF_RATE)
    tic_rate = _d(request.tic_rate)
    reduction = _d(request.agreement_reduction)
    lines = []

    effective_rate = duty_rate
    label = "Droit d'importation (DI)"
    if reduction > 0:
        effective_rate = duty_rate * (1 - reduction)
        if reduction >= 1:
            label += " (exonéré, accord préférentiel)"
        else:
            label += f" (réduit de {request.duty_rate}% → {_round2(effective_rate):.2f}%)"
    if request.mre_abatement:
        effective_rate = duty_rate * MRE_DUTY_SHARE
        label = "DI (abattement MRE 90%)"

    caf_int = _ceil(caf)
    di = _ceil(caf * effective_rate / _HUNDRED)
    lines.append(TaxLine(tax=label, rate=_round2(effective_rate), base=caf_int, amount=di))

    if request.mre_abatement:
        tpf = 0
        lines.append(TaxLine(tax="TPF (exonéré MRE)", rate=0, base=0, amount=0))
    else:
        tpf = _ceil(caf * tpf_rate / _HUNDRED)
        lines.append(TaxLine(tax="Taxe parafiscale (TPF)", rate=float(tpf_rate), base=caf_int, amount=tpf))

    tic = 0
    if tic_rate > 0:
        tic = _ceil(caf * tic_rate / _HUNDRED)
        lines.append(TaxLine(
            tax="TIC (Taxe intérieure de consommation)", rate=float(tic_rate), base=caf_int, amount=tic
        ))

    vat_base = caf + di + tpf + tic
    vat = _ceil(vat_base * vat_rate / _HUNDRED)
    lines.append(TaxLine(tax="TVA à l'importation", rate=float(vat_rate), base=_ceil(vat_base), amount=vat))

    total = di + tpf + tic + vat

    savings = None
    if reduction > 0:
        di_full = _ceil(caf * duty_rate / _HUNDRED)
        vat_full = _ceil((caf + di_full + tpf + tic) * vat_rate / _HUNDRED)
        savings = (di_full + tpf + tic + vat_full) - total

    return TaxBreakdown(
        caf_value_mad=caf_int,
        lines=lines,
        total=total,
        total_with_goods=caf_int + total,
        savings=savings,
    )
