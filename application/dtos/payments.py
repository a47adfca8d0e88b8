"""
Gateway plug-in DTOs (Pydantic v2) used at application boundaries.

Every stringly-typed field of the host interface is a closed enum here and
is validated before anything reaches the ledger.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import condecimal

from shared.currencies import is_supported_currency


class ResultStatus(str, Enum):
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    PENDING = "PENDING"
    REDIRECT = "REDIRECT"
    ERROR = "ERROR"
    REFUNDED = "REFUNDED"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"


class CallbackResult(str, Enum):
    OK = "ok"
    FAIL = "fail"
    UNKNOWN = "unknown"


def _validate_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    u = v.upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if not is_supported_currency(u):
        raise ValueError("unsupported currency")
    return u


class PluginConfig(BaseModel):
    """Host-side plug-in options; each one changes which transitions are reachable."""

    model_config = ConfigDict(populate_by_name=True)

    enable_tokens: bool = True
    enable_3dsecure: bool = Field(
        default=False,
        validation_alias=AliasChoices("enable_3dsecure", "3dsecure"),
    )


class Environment(BaseModel):
    return_url_ok: Optional[str] = None
    return_url_failed: Optional[str] = None
    return_url_3dsecure: Optional[str] = None


class PaymentMethod(BaseModel):
    token: str
    paymethod_name: Optional[str] = None
    exp_date: Optional[str] = None


class OperationRequest(BaseModel):
    ref_no: str = Field(min_length=1)
    # stored as Numeric(15, 2); a finer amount would not survive the round trip
    amount: Optional[condecimal(gt=0, max_digits=15, decimal_places=2)] = None  # type: ignore[valid-type]
    currency: Optional[str] = None
    account_info: dict[str, Any] = Field(default_factory=dict)
    document_info: dict[str, Any] = Field(default_factory=dict)
    payment_method: Optional[PaymentMethod] = None
    previous_transaction_data: Optional[dict[str, Any]] = None
    config: PluginConfig = Field(default_factory=PluginConfig)
    environment: Environment = Field(default_factory=Environment)

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: Optional[str]) -> Optional[str]:
        return _validate_currency(v)


class RedirectDescriptor(BaseModel):
    url: str
    http_method: HttpMethod = HttpMethod.POST
    form_attributes: dict[str, Any] = Field(default_factory=dict)


class Messages(BaseModel):
    vendor_message: Optional[str] = None
    customer_message: Optional[str] = None


class NewPaymentMethod(BaseModel):
    token: str
    paymethod_name: str
    exp_date: Optional[str] = None


class OperationResult(BaseModel):
    status: ResultStatus
    ref_no: Optional[str] = None
    state: Optional[str] = None
    transaction_details: dict[str, Any] = Field(default_factory=dict)
    redirect: Optional[RedirectDescriptor] = None
    retry_after_seconds: Optional[int] = None
    messages: Optional[Messages] = None
    new_payment_method: Optional[NewPaymentMethod] = None
    # set when a callback was acknowledged without touching any record
    ignored: bool = False


class CallbackPayload(BaseModel):
    """Inbound gateway notification; unknown gateway fields are kept as extras."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    external_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("external_ref", "ref_no"),
    )
    result: str = Field(validation_alias=AliasChoices("result", "returnResult"))
    txn_id: Optional[str] = None
    token: Optional[str] = None
    public_name: Optional[str] = None
    expires: Optional[str] = None
    enrolled: Optional[str] = Field(default=None, validation_alias=AliasChoices("enrolled", "Enrolled"))
    pares: Optional[str] = Field(default=None, validation_alias=AliasChoices("pares", "PaRes"))

    @model_validator(mode="after")
    def _require_reference(self) -> "CallbackPayload":
        if not self.external_ref:
            self.external_ref = self.txn_id
        if not self.external_ref:
            raise ValueError("callback carries neither external_ref nor txn_id")
        return self

    @property
    def outcome(self) -> CallbackResult:
        value = (self.result or "").strip().lower()
        if value == CallbackResult.OK.value:
            return CallbackResult.OK
        if value == CallbackResult.FAIL.value:
            return CallbackResult.FAIL
        return CallbackResult.UNKNOWN

    def new_payment_method(self) -> Optional[NewPaymentMethod]:
        if not (self.token and self.public_name):
            return None
        return NewPaymentMethod(token=self.token, paymethod_name=self.public_name, exp_date=self.expires)

    def gateway_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ConfigOption(BaseModel):
    type: str = "yesno"
    friendly_name: str
    description: Optional[str] = None
    default: Any = None


class PluginConfigDescription(BaseModel):
    friendly_name: str
    options: dict[str, ConfigOption] = Field(default_factory=dict)
