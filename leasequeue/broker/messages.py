"""
Message envelope exchanged with the broker.
"""

from pydantic import BaseModel, Field

from leasequeue.constants import MAX_NAME_LENGTH, MAX_PRIORITY, MIN_PRIORITY


class MessageEnvelope(BaseModel):
    """
    Body of every broker message.

    ``data`` holds the payload already encoded by the queue's codec, so the
    envelope stays the same whatever the payload type is.
    """

    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    data: str
    attempt: int = Field(default=0, ge=0)
    priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)

    def to_body(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_body(cls, body: bytes) -> "MessageEnvelope":
        """
        Parse a message body.

        Raises:
            pydantic.ValidationError: If the body is not a valid envelope.
        """
        return cls.model_validate_json(body)
