"""
Pydantic schemas for the customs value and import tax calculator.
"""

from typing import Optional

from pydantic import BaseModel, Field


class CAFRequest(BaseModel):
    value: float = Field(ge=0)
    currency: str = Field(default="MAD", min_length=3, max_length=3)
    incoterm: str = Field(default="CIF", min_length=3, max_length=3)
    freight: Optional[float] = Field(default=None, ge=0)
    insurance: Optional[float] = Field(default=None, ge=0)
    # Falls back to the reference rate table when omitted
    exchange_rate: Optional[float] = Field(default=None, gt=0)


class CAFResult(BaseModel):
    caf_mad: int
    exchange_rate: float
    details: list[str]


class TaxRequest(BaseModel):
    caf_mad: float = Field(ge=0)
    duty_rate: float = Field(ge=0)
    vat_rate: float = Field(default=20.0, ge=0)
    tpi_rate: Optional[float] = Field(default=None, ge=0)    # parafiscal tax, 0.25% when omitted
    tic_rate: Optional[float] = Field(default=None, ge=0)
    agreement_reduction: Optional[float] = Field(default=None, ge=0, le=1)
    mre_abatement: bool = False


class TaxLine(BaseModel):
    tax: str
    rate: float
    base: int
    amount: int


class TaxBreakdown(BaseModel):
    caf_value_mad: int
    lines: list[TaxLine]
    total: int
    total_with_goods: int
    savings: Optional[int] = None
