import uuid
from datetime import date
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.config import SUPPORTED_CURRENCIES, get_settings
from app.domain import CONSULTATION_PRICES, ConsultationType, OrderType, PaymentProvider


class CamelModel(BaseModel):
    # The storefront posts camelCase; snake_case is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConsultationMetadata(CamelModel):
    kind: Literal["consultation"] = "consultation"
    consultation_type: ConsultationType = ConsultationType.BASIC


class LineItem(CamelModel):
    product_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    unit_amount: int = Field(ge=0)
    quantity: int = Field(ge=1)


class ProductMetadata(CamelModel):
    kind: Literal["product"] = "product"
    items: List[LineItem] = Field(min_length=1)
    shipping_amount: int = Field(default=0, ge=0)
    tax_amount: int = Field(default=0, ge=0)
    shipping_address: Optional[Dict[str, str]] = None

    @property
    def subtotal(self) -> int:
        return sum(item.unit_amount * item.quantity for item in self.items)

    @property
    def total(self) -> int:
        return self.subtotal + self.shipping_amount + self.tax_amount


OrderMetadata = Annotated[Union[ConsultationMetadata, ProductMetadata], Field(discriminator="kind")]


class PaymentRequest(CamelModel):
    amount: int
    currency: str = "usd"
    customer_email: EmailStr
    customer_name: str = Field(min_length=2)
    order_type: OrderType
    payment_method: Optional[PaymentProvider] = None
    metadata: Optional[OrderMetadata] = None

    @model_validator(mode="before")
    @classmethod
    def tag_metadata(cls, data: Any) -> Any:
        if isinstance(data, dict):
            metadata = data.get("metadata")
            order_type = data.get("orderType", data.get("order_type"))
            if isinstance(metadata, dict) and "kind" not in metadata and order_type:
                data = dict(data, metadata=dict(metadata, kind=order_type))
        return data

    @field_validator("amount")
    @classmethod
    def check_minimum(cls, v: int) -> int:
        minimum = get_settings().min_payment_amount
        if v < minimum:
            raise ValueError(f"Amount must be at least {minimum} minor units")
        return v

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        v = v.lower()
        if v not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Invalid currency. Must be one of: {', '.join(SUPPORTED_CURRENCIES)}")
        return v

    @model_validator(mode="after")
    def check_metadata(self) -> "PaymentRequest":
        if self.order_type is OrderType.PRODUCT:
            if not isinstance(self.metadata, ProductMetadata):
                raise ValueError("Product orders need line items in metadata")
            if self.metadata.total != self.amount:
                raise ValueError(
                    f"Amount {self.amount} does not match line items, shipping and tax ({self.metadata.total})"
                )
        else:
            if self.metadata is None:
                self.metadata = ConsultationMetadata()
            elif not isinstance(self.metadata, ConsultationMetadata):
                raise ValueError("Consultation orders cannot carry product metadata")
            price = CONSULTATION_PRICES[self.metadata.consultation_type]
            if self.amount != price:
                raise ValueError(
                    f"Amount {self.amount} does not match the "
                    f"{self.metadata.consultation_type.value} consultation price ({price})"
                )
        return self


class StripeConfirmRequest(CamelModel):
    payment_intent_id: str = Field(min_length=1)


class ConsultationRequest(CamelModel):
    order_id: str
    customer_id: str
    consultation_type: ConsultationType
    birth_date: date
    birth_time: Optional[str] = Field(default=None, pattern=r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
    birth_place: str = Field(min_length=2)
    questions: str = Field(min_length=10)

    @field_validator("order_id", "customer_id")
    @classmethod
    def check_uuid(cls, v: str) -> str:
        try:
            uuid.UUID(v)
        except ValueError:
            raise ValueError("must be a valid UUID")
        return v
