"""Statement model for the mapper's SELECT and INSERT helpers.

Values are always bound. They render as numbered pyformat placeholders
(``%(p1)s``, ``%(p2)s``, ...) in the order they appear, so an upsert can
refer back to the inserted values without repeating them.

Table and column names are checked against a plain identifier pattern and
rendered as-is. Anything else (expressions, quoted names, ``count(*)``)
has to be wrapped in :class:`Raw`, which is passed through untouched and
is therefore only safe with trusted input. The ``where`` predicate of a
SELECT and the clause given to :class:`RawConflict` are trusted SQL text
as well; bind their values through ``params``.

INSERT statements always carry bound values, so a literal ``%`` in their
trusted text is doubled on output. A SELECT is rendered verbatim: its
``where`` text follows the driver's rules for the ``params`` given with it.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from pgmapper.errors import InvalidIdentifierError
from pgmapper.types import Params, Values

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*(\.[A-Za-z_][A-Za-z0-9_$]*)?")


@dataclass(frozen=True)
class Raw:
    """Trusted SQL text used where an identifier is expected."""

    text: str


@dataclass(frozen=True)
class Statement:
    sql: str
    params: Params | None = None


Name = str | Raw


def identifier(name: Name) -> str:
    """Return *name* as SQL text, rejecting anything but a plain identifier."""
    if isinstance(name, Raw):
        return name.text
    if not isinstance(name, str) or not _IDENTIFIER.fullmatch(name):
        raise InvalidIdentifierError(f"Invalid SQL identifier: {name!r}")
    return name


def literal(text: str) -> str:
    """Escape ``%`` in SQL text that is sent together with bound parameters."""
    return text.replace("%", "%%")


def field_names(fields: str | Sequence[Name]) -> list[Name]:
    """Normalize a field list; ``"id, name"`` becomes ``["id", "name"]``."""
    if isinstance(fields, str):
        return [f.strip() for f in fields.split(",")]
    return list(fields)


def column_list(fields: Name | Sequence[Name]) -> str:
    """Render a field list. ``"*"`` selects every column."""
    if isinstance(fields, Raw):
        return fields.text
    if isinstance(fields, str) and fields.strip() == "*":
        return "*"
    names = field_names(fields)
    if not names:
        raise InvalidIdentifierError("Field list is empty")
    return ", ".join(identifier(f) for f in names)


class Placeholders:
    """Hands out sequentially numbered placeholders and collects the values."""

    def __init__(self) -> None:
        self.params: dict[str, Any] = {}

    def bind(self, value: Any) -> str:
        key = f"p{len(self.params) + 1}"
        self.params[key] = value
        return f"%({key})s"


@dataclass(frozen=True)
class Select:
    table: Name
    fields: Name | Sequence[Name] = "*"
    where: str | None = None
    params: Params | None = None

    def render(self) -> Statement:
        sql = f"SELECT {column_list(self.fields)} FROM {identifier(self.table)}"
        if self.where is not None:
            sql += f" WHERE {self.where}"
        return Statement(sql + ";", self.params)


@dataclass(frozen=True)
class OnConflict:
    """``ON CONFLICT`` clause for single-row upserts.

    With no keys this is ``ON CONFLICT DO NOTHING``. Otherwise every
    inserted field is updated from the value bound for it in the row.
    """

    keys: Sequence[Name] = ()

    def render(self, fields: Sequence[Name], placeholders: Sequence[str]) -> str:
        if not self.keys:
            return " ON CONFLICT DO NOTHING"
        keys = literal(", ".join(identifier(k) for k in self.keys))
        assignments = ", ".join(
            f"{literal(identifier(f))} = {p}" for f, p in zip(fields, placeholders)
        )
        return f" ON CONFLICT ({keys}) DO UPDATE SET {assignments}"


@dataclass(frozen=True)
class RawConflict:
    """Caller-written conflict action, e.g. ``"(id) DO NOTHING"``."""

    clause: str

    def render(self, fields: Sequence[Name], placeholders: Sequence[str]) -> str:
        return f" ON CONFLICT {literal(self.clause)}"


@dataclass(frozen=True)
class Insert:
    table: Name
    fields: str | Sequence[Name]
    rows: Sequence[Values] = field(default_factory=list)
    on_conflict: OnConflict | RawConflict | None = None

    def render(self) -> Statement:
        fields = field_names(self.fields)
        if not fields:
            raise InvalidIdentifierError("Field list is empty")
        if not self.rows:
            raise ValueError("Insert needs at least one row")

        ph = Placeholders()
        groups: list[list[str]] = []
        for i, row in enumerate(self.rows):
            if len(row) != len(fields):
                raise ValueError(
                    f"Row {i} has {len(row)} values for {len(fields)} fields"
                )
            groups.append([ph.bind(value) for value in row])

        values = ", ".join("(" + ", ".join(g) + ")" for g in groups)
        sql = (
            f"INSERT INTO {literal(identifier(self.table))} ({literal(column_list(fields))}) "
            f"VALUES {values}"
        )
        if self.on_conflict is not None:
            sql += self.on_conflict.render(fields, groups[0])
        return Statement(sql, ph.params)
