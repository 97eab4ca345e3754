"""Typed transaction metadata.

Each ledger row carries one metadata context, discriminated by ``kind``.
Rows are stored as flat JSON objects so ``engine_type`` and friends stay
queryable. Unknown shapes land in :class:`GenericMetadata`, which keeps
whatever keys the caller passed.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from creditledger.core.errors import InvalidMetadataError


class ChatUsage(BaseModel):
    kind: Literal["chat_usage"] = "chat_usage"
    provider: str
    model: str
    session_id: str | None = None
    tokens: int | None = None
    streaming: bool = False


class EngineUsage(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["engine_usage"] = "engine_usage"
    engine_type: str
    action_count: int = 1
    base_tokens: int = 0
    mcp_surcharge: Decimal = Decimal("0")
    total_cost: int = 0
    has_mcp_surcharge: bool = False


class PurchaseInfo(BaseModel):
    kind: Literal["purchase"] = "purchase"
    checkout_session_id: str | None = None
    payment_intent_id: str | None = None
    amount_paid: int = 0
    currency: str = "usd"


class SubscriptionGrant(BaseModel):
    kind: Literal["subscription_grant"] = "subscription_grant"
    plan: str
    subscription_id: str | None = None
    invoice_id: str | None = None
    checkout_session_id: str | None = None


class GenericMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["generic"] = "generic"


TransactionMetadata = Annotated[
    Union[ChatUsage, EngineUsage, PurchaseInfo, SubscriptionGrant, GenericMetadata],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(TransactionMetadata)
_KINDS = {"chat_usage", "engine_usage", "purchase", "subscription_grant", "generic"}


def coerce_metadata(value: BaseModel | dict[str, Any] | None) -> BaseModel:
    """Turn caller input into one of the metadata models.

    Raises InvalidMetadataError when a tagged dict is missing required fields.
    """
    if value is None:
        return GenericMetadata()
    if isinstance(value, BaseModel):
        return value
    data = dict(value)
    try:
        if data.get("kind") in _KINDS:
            return _adapter.validate_python(data)
        data.pop("kind", None)
        return GenericMetadata(**data)
    except ValidationError as exc:
        raise InvalidMetadataError(
            f"invalid {data.get('kind', 'generic')} metadata: {exc.error_count()} error(s)"
        ) from exc


def dump_metadata(value: BaseModel | dict[str, Any] | None) -> dict[str, Any]:
    """JSON-ready flat dict for storage."""
    return coerce_metadata(value).model_dump(mode="json", exclude_none=True)

