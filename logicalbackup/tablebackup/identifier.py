"""
Table identifiers and their sanitized SQL form.

Quoting is not implemented here: TableIdentifier delegates it to
psycopg's sql.Identifier. TableBackup only depends on the Sanitizer
protocol, so any object with a sanitize() method can be used.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from psycopg import sql


@runtime_checkable
class Sanitizer(Protocol):
    """Anything that renders itself as a safely quoted SQL identifier."""

    def sanitize(self) -> str:
        ...


@dataclass(frozen=True)
class TableIdentifier:
    """Schema-qualified table name.

    Attributes:
        schema: Schema name (unquoted)
        name: Table name (unquoted)

    Example:
        >>> TableIdentifier("public", "users").sanitize()
        '"public"."users"'
    """

    schema: str
    name: str

    @classmethod
    def parse(cls, qualified: str) -> TableIdentifier:
        """Split ``schema.table``; a bare name goes to the public schema.

        Raises:
            ValueError: If either part is empty
        """
        schema, _, name = qualified.rpartition(".")
        if not schema:
            schema = "public"
        if not name:
            raise ValueError(f"Invalid table name '{qualified}'")
        return cls(schema=schema, name=name)

    def sanitize(self) -> str:
        return sql.Identifier(self.schema, self.name).as_string()

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"
