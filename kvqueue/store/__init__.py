"""
Backing store module.
Contains the REST store client and serialization helpers.
"""

from kvqueue.store.client import (
    StoreClient,
    StoreCommandError,
    StoreError,
    StoreUnavailableError,
    get_store_client,
)
from kvqueue.store.serialization import (
    DeserializationError,
    Ok,
    decode_json,
    deserialize,
    serialize,
)

__all__ = [
    "StoreClient",
    "StoreError",
    "StoreUnavailableError",
    "StoreCommandError",
    "get_store_client",
    "Ok",
    "DeserializationError",
    "serialize",
    "deserialize",
    "decode_json",
]
