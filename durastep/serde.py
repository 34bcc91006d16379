"""Encoding of step results into the JSON form kept in history."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import TypeAdapter
from pydantic_core import to_jsonable_python


class ResultSerializer:
    """
    Convert step results to and from their committed JSON form.

    Every value handed back to workflow code passes through ``encode`` then
    ``decode``, so a first run and a replay observe the same data.
    """

    @staticmethod
    def encode(value: Any) -> Any:
        try:
            return to_jsonable_python(value)
        except Exception as e:
            raise ValueError(
                f"Cannot serialize step result of type '{type(value).__name__}': {e}"
            )

    @staticmethod
    def decode(data: Any, result_type: Optional[Any] = None) -> Any:
        if result_type is None:
            return data
        try:
            return TypeAdapter(result_type).validate_python(data)
        except Exception as e:
            raise ValueError(
                f"Failed to reconstruct step result as '{result_type}': {e}"
            )
