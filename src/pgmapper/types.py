"""Shared types for the pgmapper package."""

from typing import Any, Callable, Sequence

Row = dict[str, Any]
Params = tuple | list | dict
Values = Sequence[Any]
Handler = Callable[[Any], None]
