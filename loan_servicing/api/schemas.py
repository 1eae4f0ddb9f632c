"""
Pydantic schemas for API requests and responses
"""

from typing import Optional
from pydantic import BaseModel, Field


# Credit schemas
class CreateCreditRequest(BaseModel):
    client_id: str
    capital: str = Field(..., description="Decimal amount as string")
    modality: str = Field("fixed_equal", description="fixed_equal, fixed_progressive or open_ended")
    cadence: Optional[str] = Field(None, description="weekly, biweekly or monthly")
    installment_count: Optional[int] = None
    rate: Optional[str] = Field(None, description="Explicit rate; omitted uses the proportional rule")
    disbursement_date: Optional[str] = None  # ISO date string
    commitment_date: Optional[str] = None  # ISO date string
    is_legacy: bool = False
    discount_pct: Optional[str] = None


class UpdateCreditRequest(BaseModel):
    capital: Optional[str] = None
    modality: Optional[str] = None
    cadence: Optional[str] = None
    installment_count: Optional[int] = None
    rate: Optional[str] = None
    commitment_date: Optional[str] = None
    discount_pct: Optional[str] = None


class SimulatePlanRequest(BaseModel):
    capital: str
    modality: str = "fixed_equal"
    cadence: Optional[str] = None
    installment_count: int = 1
    rate: Optional[str] = None
    discount_pct: Optional[str] = None
    commitment_date: Optional[str] = None


# Payment schemas
class PaymentRequest(BaseModel):
    amount: Optional[str] = Field(None, description="Omitted pays the default amount due")
    discount: Optional[str] = Field(None, description="Discount percent 0..100")
    discount_scope: Optional[str] = Field(None, description="penalty or total")
    method: str = "cash"
    note: Optional[str] = None
    as_of: Optional[str] = None  # ISO date string


# Payoff schemas
class CancelCreditRequest(BaseModel):
    discount: Optional[str] = None
    discount_scope: Optional[str] = None
    method: str = "cash"
    note: Optional[str] = None
    as_of: Optional[str] = None


class RefinanceRequest(BaseModel):
    rate_option: str = Field(..., description="P1, P2 or MANUAL")
    new_cadence: str
    new_installment_count: int
    manual_rate: Optional[str] = Field(None, description="Monthly percent for MANUAL")
    as_of: Optional[str] = None


# Admin schemas
class SweepRequest(BaseModel):
    as_of: Optional[str] = None
