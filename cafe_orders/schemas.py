"""Pydantic schemas for the orders HTTP surface.

Request bodies accept both the current camelCase field names and the names
used by the original ordering site (``cliente``, ``metodoPago``, ``nota``,
``sessionId``). Item dicts are passed through untouched: their shape is
validated by ``OrderItem.from_dict`` so the API and the core agree on one
set of rules.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateOrderIn(_Body):
    """Schema for creating an order.

    Attributes:
        customer_name: Name of the customer; empty is rejected by the
            repository with ``EMPTY_CUSTOMER``.
        items: Line items as ``{name, price, qty}`` (legacy
            ``{nombre, precio, cantidad}`` accepted).
        payment_method: ``cash``, ``junaeb`` or ``card`` (legacy labels ok).
        payment_intent_id: Guarantee authorization id, if any.
    """

    customer_name: str = Field(default="", validation_alias=AliasChoices("customerName", "cliente", "customer_name"))
    items: list[Any] = Field(default_factory=list)
    email: Optional[str] = None
    payment_method: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentMethod", "metodoPago", "payment_method")
    )
    note: Optional[str] = Field(default=None, validation_alias=AliasChoices("note", "nota"))
    payment_intent_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentIntentId", "payment_intent_id")
    )
    external_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("externalId", "sessionId", "external_id")
    )


class CheckoutSessionIn(_Body):
    customer_name: str = Field(default="", validation_alias=AliasChoices("cliente", "customerName", "customer_name"))
    email: Optional[str] = None
    items: list[Any] = Field(default_factory=list)
    note: Optional[str] = Field(default=None, validation_alias=AliasChoices("nota", "note"))


class CheckoutSessionOut(BaseModel):
    id: str
    url: Optional[str] = None
    order_id: Optional[int] = Field(default=None, serialization_alias="orderId")


class SimulatePaymentIn(_Body):
    session_id: str = Field(min_length=1, validation_alias=AliasChoices("sessionId", "session_id"))
    metadata: dict[str, Any] = Field(default_factory=dict)
    items: Optional[list[Any]] = None
