"""
Message envelope and payload codecs.

Stream entries are flat ``str -> str`` mappings. A PayloadCodec is the
explicit contract that turns a payload object into such a mapping and back;
each subscription owns one. The ``traceparent`` field written by the
producer is transport metadata and never reaches a decoded payload.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from pullstream.observability.tracing import TRACE_PARENT_FIELD

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

Fields = dict[str, str]


@dataclass(frozen=True)
class Message:
    """
    Immutable unit of transport.

    Attributes:
        id: Stream entry id, unique within the topic
        topic: Stream the entry lives in
        properties: Wire payload (field name -> value)
    """

    id: str
    topic: str
    properties: Fields = field(default_factory=dict)


class PayloadCodec(Protocol[T]):
    """Encode a payload into stream fields and decode it back."""

    def encode(self, payload: T) -> Fields: ...

    def decode(self, fields: Fields) -> T: ...


class RawCodec:
    """Pass fields through unchanged; payloads are plain dicts."""

    def encode(self, payload: dict[str, Any]) -> Fields:
        return {str(k): str(v) for k, v in payload.items()}

    def decode(self, fields: Fields) -> dict[str, str]:
        return {k: v for k, v in fields.items() if k != TRACE_PARENT_FIELD}


class ModelCodec(Generic[M]):
    """
    Codec for a pydantic model.

    Each model field becomes one stream field holding its JSON encoding,
    ``null`` included, so decode(encode(x)) == x for any field type.
    Decoding parses each field against its annotation; a value that is not
    valid JSON for the field (hand-written entries such as ``sku=A1``) is
    passed to the model as the raw string.

    Usage:
        codec = ModelCodec(OrderCreated)
        fields = codec.encode(OrderCreated(order_id="o-1", amount=3))
        order = codec.decode(fields)
    """

    def __init__(self, model: type[M]):
        self.model = model
        self._adapters: dict[str, TypeAdapter] = {
            name: TypeAdapter(info.annotation) for name, info in model.model_fields.items()
        }

    def encode(self, payload: M) -> Fields:
        return {
            name: json.dumps(value)
            for name, value in payload.model_dump(mode="json").items()
        }

    def decode(self, fields: Fields) -> M:
        """
        Validate fields into the model.

        Raises:
            pydantic.ValidationError: fields do not match the model
        """
        values: dict[str, Any] = {}
        for name, raw in fields.items():
            if name == TRACE_PARENT_FIELD:
                continue
            adapter = self._adapters.get(name)
            if adapter is None:
                values[name] = raw
                continue
            try:
                values[name] = adapter.validate_json(raw)
            except ValidationError:
                values[name] = raw
        return self.model.model_validate(values)

    def __repr__(self) -> str:
        return f"ModelCodec({self.model.__name__})"


def codec_for(payload_type: Any) -> PayloadCodec:
    """
    Resolve the codec for a subscribe() argument.

    Accepts a codec instance, a pydantic model class, or dict for raw fields.
    """
    if isinstance(payload_type, type) and issubclass(payload_type, BaseModel):
        return ModelCodec(payload_type)
    if payload_type is dict or payload_type is None:
        return RawCodec()
    if hasattr(payload_type, "encode") and hasattr(payload_type, "decode"):
        return payload_type
    raise TypeError(
        f"Cannot build a codec for {payload_type!r}; pass a pydantic model, "
        "dict, or an object with encode()/decode()"
    )
