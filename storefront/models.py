"""
Domain records shared by the stores, the lifecycle and the API.
Wire format is camelCase (orderId, orderStatus, ...); Python attributes are snake_case.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from storefront.order_state import OrderStatus

# Decimals go out as JSON numbers, the way the frontend webhooks expect them
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


# Order columns a persisted update may touch; everything else is fixed at creation
ORDER_UPDATABLE_FIELDS = frozenset({
    "order_status",
    "status_change_note",
    "payment_intent_id",
    "cancellation_reason",
    "cancellation_date",
    "subtotal",
    "shipping",
    "total",
})


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class LineItem(CamelModel):
    """Snapshot of one product at order time; later product edits do not follow."""
    product_ref: int
    name: str = ""
    unit_price: Money = Decimal("0")
    quantity: int = Field(..., gt=0)


class User(CamelModel):
    id: int
    email: str | None = None
    username: str | None = None
    is_admin: bool = False
    api_token: str | None = Field(default=None, exclude=True)


class Actor(CamelModel):
    """Who is performing a create/update. None means a system/internal write."""
    id: int
    email: str | None = None
    is_admin: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, email=user.email, is_admin=user.is_admin)


class Product(CamelModel):
    id: int
    name: str
    stock: int = Field(default=0, ge=0)


class Order(CamelModel):
    id: int
    order_id: str
    order_status: OrderStatus
    items: list[LineItem] = Field(default_factory=list)
    subtotal: Money | None = None
    shipping: Money | None = None
    total: Money | None = None
    payment_intent_id: str | None = None
    cancellation_reason: str | None = None
    cancellation_date: datetime | None = None
    status_change_note: str | None = None
    owner_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StatusHistoryEntry(CamelModel):
    id: int | None = None
    order: int
    from_status: OrderStatus | None = None
    to_status: OrderStatus
    changed_at: datetime
    changed_by_email: str
    note: str | None = None


class OrderCreate(CamelModel):
    """Create payload. owner_id is honoured only for programmatic (actor-less) creation."""
    order_id: str | None = None
    order_status: OrderStatus = Field(default=OrderStatus.PENDING, validate_default=True)
    items: list[LineItem] = Field(..., min_length=1)
    subtotal: Money = Decimal("0")
    shipping: Money = Decimal("0")
    total: Money = Decimal("0")
    payment_intent_id: str | None = None
    owner_id: int | None = None


class OrderUpdate(CamelModel):
    model_config = ConfigDict(extra="forbid")

    order_status: OrderStatus | None = None
    status_change_note: str | None = Field(default=None, max_length=5000)
    payment_intent_id: str | None = None
    cancellation_reason: str | None = Field(default=None, max_length=1000)
    cancellation_date: datetime | None = None
    subtotal: Money | None = None
    shipping: Money | None = None
    total: Money | None = None
