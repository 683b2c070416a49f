"""
Common utilities.
"""

from __future__ import annotations

import copy
import dataclasses
import inspect
import json
import secrets
from collections.abc import Mapping
from functools import cache
from typing import Any, Callable

from pydantic import BaseModel

__all__ = [
    "ID_CHARS",
    "TEMP_ID_PREFIX",
    "base_n_encode",
    "generate_id",
    "generate_temp_id",
    "get_record_id",
    "set_record_id",
    "apply_mutator",
    "maybe_await",
    "make_cache_key",
]

ID_CHARS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
"""
Characters used in generated ids.
"""

TEMP_ID_PREFIX = "tmp-"
"""
Prefix of ids assigned locally to records created without one.
"""


def base_n_encode(value: int, chars: str, bit_count: int) -> str:
    """
    Encode an integer of at most `bit_count` bits as a base-N string, where N
    is len(chars). The result is padded to the max length for that width.
    """
    assert len(chars)

    result = ""
    while value:
        value, index = divmod(value, len(chars))
        result += chars[index]

    return result.ljust(_get_max_len(bit_count, len(chars)), chars[0])


def generate_id(bit_count: int = 48) -> str:
    """
    Generate a random id segment. Contains no separator characters.
    """
    return base_n_encode(secrets.randbits(bit_count), ID_CHARS, bit_count)


def generate_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{generate_id()}"


def get_record_id(record: Any) -> str | None:
    """
    Default id getter: supports mappings, dataclasses and pydantic models.
    """
    if isinstance(record, Mapping):
        return record.get("id")
    return getattr(record, "id", None)


def set_record_id(record: Any, new_id: str) -> Any:
    """
    Default id setter: returns a copy of the record with its id replaced.
    """
    if isinstance(record, Mapping):
        return {**record, "id": new_id}
    if isinstance(record, BaseModel):
        return record.model_copy(update={"id": new_id})
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return dataclasses.replace(record, id=new_id)

    record = copy.copy(record)
    record.id = new_id
    return record


def apply_mutator(value: Any, mutator: Callable[[Any], Any]) -> Any:
    """
    Apply mutator to a deep copy of value and return the new value.

    The mutator may either patch the copy in place and return `None`, or
    return a replacement value.
    """
    draft = copy.deepcopy(value)
    result = mutator(draft)
    return draft if result is None else result


async def maybe_await(func: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Invoke a collaborator callback which may be either a plain function or a
    coroutine function.
    """
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def make_cache_key(store_id: str, context: Any) -> str:
    """
    Get read cache key for a store's query context.
    """
    return json.dumps([store_id, context], sort_keys=True, default=_encode)


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


@cache
def _get_max_len(bit_count: int, char_count: int) -> int:
    """
    Get max length of the encoded value for the given # bits and # characters
    used to represent it.
    """
    max_value = (1 << bit_count) - 1
    max_len = 0
    while max_value:
        max_value = max_value // char_count
        max_len += 1
    return max_len
