"""
Argument codec.

Job arguments are stored as opaque bytes. The default codec serializes with
pydantic-core's JSON encoder, which also handles datetimes, UUIDs and
pydantic models. Applications can install their own codec with set_codec().
"""

from typing import Any, Protocol

from pydantic_core import from_json, to_json


class Codec(Protocol):
    """Serializes job arguments to and from bytes."""

    def dump(self, arguments: Any) -> bytes: ...

    def load(self, data: bytes | None) -> Any: ...


class JsonCodec:
    """JSON argument codec."""

    def dump(self, arguments: Any) -> bytes:
        return to_json(arguments)

    def load(self, data: bytes | None) -> Any:
        if data is None:
            return []
        return from_json(data)


_codec: Codec = JsonCodec()


def get_codec() -> Codec:
    """Get the active argument codec."""
    return _codec


def set_codec(codec: Codec) -> None:
    """Replace the active argument codec."""
    global _codec
    _codec = codec
