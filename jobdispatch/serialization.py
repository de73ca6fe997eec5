"""
Envelope serialization.

The default serializer encodes envelopes as JSON through pydantic, with the
opaque argument bytes carried as base64. Any object implementing the
Serializer protocol can be supplied to the publisher and worker pool instead.
"""

from typing import Protocol

from pydantic import ValidationError

from jobdispatch.errors import SerializationError
from jobdispatch.types.envelope import JobEnvelope


class Serializer(Protocol):
    """Encodes envelopes to bytes and back."""

    content_type: str

    def serialize(self, envelope: JobEnvelope) -> bytes: ...

    def deserialize(self, data: bytes) -> JobEnvelope: ...


class EnvelopeSerializer:
    """JSON envelope serializer."""

    content_type = "application/json"

    def serialize(self, envelope: JobEnvelope) -> bytes:
        """
        Encode an envelope.

        Raises:
            SerializationError: If the envelope cannot be encoded.
        """
        try:
            return envelope.model_dump_json().encode("utf-8")
        except (ValueError, TypeError) as e:
            raise SerializationError(f"Cannot serialize envelope {envelope.id}: {e}") from e

    def deserialize(self, data: bytes) -> JobEnvelope:
        """
        Decode an envelope.

        Raises:
            SerializationError: If the payload is malformed or violates
                envelope invariants.
        """
        try:
            return JobEnvelope.model_validate_json(data)
        except ValidationError as e:
            raise SerializationError(f"Malformed envelope payload: {e}") from e
