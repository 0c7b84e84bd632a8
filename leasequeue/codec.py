"""
Payload codecs.

The queue never looks inside ``Job.data``; a codec turns it into the text
stored in the database or sent to the broker, and back.
"""

from typing import Any, Generic, Protocol

from pydantic import TypeAdapter, ValidationError

from leasequeue.exceptions import PayloadDecodeError
from leasequeue.types.job import PayloadT


class PayloadCodec(Protocol[PayloadT]):
    """Encodes job payloads to text and decodes them back."""

    def encode(self, data: PayloadT) -> str:
        ...

    def decode(self, raw: str | bytes) -> PayloadT:
        """
        Decode a stored payload.

        Raises:
            PayloadDecodeError: If ``raw`` is not a valid payload.
        """
        ...


class JsonPayloadCodec(Generic[PayloadT]):
    """
    JSON codec validated by a pydantic ``TypeAdapter``.

    Any type pydantic understands can be used as the payload type: plain
    ``dict[str, Any]`` (the default), a ``BaseModel`` subclass, a dataclass
    or a ``TypedDict``. Decoding a value of the wrong shape raises
    ``PayloadDecodeError`` instead of handing a half-valid payload to a
    consumer.
    """

    def __init__(self, payload_type: Any = dict[str, Any]):
        self._adapter: TypeAdapter[PayloadT] = TypeAdapter(payload_type)

    def encode(self, data: PayloadT) -> str:
        return self._adapter.dump_json(data).decode("utf-8")

    def decode(self, raw: str | bytes) -> PayloadT:
        try:
            return self._adapter.validate_json(raw)
        except ValidationError as e:
            raise PayloadDecodeError(
                f"payload does not match the expected shape: {e.error_count()} error(s)",
                operation="decode",
            ) from e


def default_codec() -> JsonPayloadCodec[dict[str, Any]]:
    """Codec for schema-less ``dict`` payloads."""
    return JsonPayloadCodec(dict[str, Any])
