"""Shared serialization utilities for broadcast events using msgpack."""

from typing import Any

import msgpack
from pydantic import BaseModel


def pack_event(event: BaseModel) -> bytes:
    """
    Pack a broadcast event using msgpack.

    Decimals and datetimes are rendered as strings by pydantic's JSON mode so
    the payload stays portable across clients.

    Args:
        event: Any pydantic event model

    Returns:
        msgpack bytes
    """
    return msgpack.packb(event.model_dump(mode="json"), use_bin_type=True)  # type: ignore


def unpack_event(packed_data: bytes) -> dict[str, Any]:
    """
    Unpack an event from msgpack format.

    Args:
        packed_data: Binary msgpack data

    Returns:
        Dictionary representation of the event
    """
    return msgpack.unpackb(packed_data, raw=False, strict_map_key=False)
