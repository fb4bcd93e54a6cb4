"""Payments domain schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...utils.money import to_decimal


class PaymentEventStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# ============================================================================
# GATEWAY MESSAGES
# ============================================================================


class ResultNotification(BaseModel):
    """Server-to-server ResultURL callback"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    out_sum: str = Field(alias="OutSum")
    inv_id: str = Field(alias="InvId")
    signature_value: str = Field(alias="SignatureValue")
    payment_method: Optional[str] = Field(default=None, alias="PaymentMethod")
    inc_curr_label: Optional[str] = Field(default=None, alias="IncCurrLabel")
    email: Optional[str] = Field(default=None, alias="EMail")
    fee: Optional[str] = Field(default=None, alias="Fee")

    @field_validator("out_sum")
    @classmethod
    def validate_out_sum(cls, v: str) -> str:
        amount = to_decimal(v)
        if amount <= 0:
            raise ValueError("OutSum must be positive")
        return v

    @field_validator("inv_id")
    @classmethod
    def validate_inv_id(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("InvId must be numeric")
        return v

    @property
    def invoice_number(self) -> int:
        return int(self.inv_id)

    @property
    def amount(self) -> Decimal:
        return to_decimal(self.out_sum)

    def pass_through(self) -> dict[str, str]:
        extra = self.model_extra or {}
        return {k: str(v) for k, v in extra.items() if k.lower().startswith("shp_")}

    def correlation_invoice_id(self) -> Optional[str]:
        for key, value in self.pass_through().items():
            if key.lower() == "shp_invoice_id":
                return value
        return None


class JWSNotification(BaseModel):
    """ResultURL2 payload carried inside a verified JWS token"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    shop: Optional[str] = None
    inv_id: str = Field(alias="invId")
    op_key: Optional[str] = Field(default=None, alias="opKey")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    inc_sum: Optional[str] = Field(default=None, alias="incSum")
    out_sum: Optional[str] = Field(default=None, alias="outSum")
    state: str

    @field_validator("inv_id", "inc_sum", "out_sum", mode="before")
    @classmethod
    def coerce_to_str(cls, v):
        return v if v is None else str(v)

    @field_validator("inv_id")
    @classmethod
    def validate_inv_id(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("invId must be numeric")
        return v

    @property
    def invoice_number(self) -> int:
        return int(self.inv_id)

    @property
    def claimed_amount(self) -> Optional[str]:
        # OutSum is the merchant amount; IncSum may include the payer's commission
        return self.out_sum or self.inc_sum

    @property
    def is_success(self) -> bool:
        return self.state.upper() == "OK"


class RedirectNotification(BaseModel):
    """Browser redirect to SuccessURL / FailURL; informational only"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    out_sum: Optional[str] = Field(default=None, alias="OutSum")
    inv_id: Optional[str] = Field(default=None, alias="InvId")
    signature_value: Optional[str] = Field(default=None, alias="SignatureValue")
    culture: Optional[str] = Field(default=None, alias="Culture")


# ============================================================================
# API
# ============================================================================


class LineItem(BaseModel):
    """Fiscal receipt item (54-FZ)"""

    name: str = Field(max_length=128)
    quantity: int = 1
    cost: Decimal
    tax: str = "none"
    payment_method: str = "full_payment"
    payment_object: str = "service"

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("quantity must be at least 1")
        return v


class InvoiceCreate(BaseModel):
    participant_id: str
    participant_name: Optional[str] = None
    master_class_id: str
    workshop_date: datetime
    amount: Decimal
    currency: str = "RUB"
    description: Optional[str] = None
    line_items: list[LineItem] = []

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("amount must be positive")
        if v != v.quantize(Decimal("0.01")):
            raise ValueError("amount must have at most two decimal places")
        return v


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    participant_id: str
    participant_name: Optional[str] = None
    master_class_id: str
    workshop_date: datetime
    amount: Decimal
    currency: str
    description: Optional[str] = None
    status: str
    payment_method: Optional[str] = None
    gateway_invoice_id: Optional[int] = None
    operation_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_status: str
    refund_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_request_id: Optional[str] = None
    refund_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentLinkResponse(BaseModel):
    invoice_id: str
    payment_url: str
    gateway_invoice_id: int
    out_sum: str


class RefundInitiateRequest(BaseModel):
    amount: Optional[Decimal] = None  # defaults to the full invoice amount
    reason: str = Field(min_length=1, max_length=1000)
    email: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("amount must be positive")
        return v


class EligibilityResponse(BaseModel):
    invoice_id: str
    eligible: bool
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    invoice_id: str
    refund_status: str
    request_id: Optional[str] = None
    amount: Optional[Decimal] = None
    message: Optional[str] = None


class SyncSummaryResponse(BaseModel):
    checked: int
    updated: int
    failed: int
    skipped: bool = False
    refunds_checked: int = 0
    refunds_updated: int = 0
    details: list[dict[str, Any]] = []
