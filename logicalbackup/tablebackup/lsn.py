"""
Log sequence numbers (LSN) for PostgreSQL write-ahead log positions.

An LSN is a 64-bit, totally ordered position in the WAL. The server renders it
as two 32-bit halves in uppercase hexadecimal separated by a slash
(``16/B374D848``). Delta files on disk use the flat lowercase hexadecimal form
of the same 64-bit value (``16b374d848``).

Invariants:
    - LSN(0) is the "unset" value and means "no consistent point"
    - parse(str(lsn)) == lsn for every valid lsn
    - Ordering follows the integer value

How to change safely:
    - The delta filename form is shared with the delta writer process;
      never change it without migrating existing directories
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import LSNParseError

MAX_LSN = 0xFFFFFFFFFFFFFFFF

_SERVER_FORM = re.compile(r"([0-9A-Fa-f]{1,8})/([0-9A-Fa-f]{1,8})")
_HEX_FORM = re.compile(r"[0-9A-Fa-f]{1,16}")


@dataclass(frozen=True, order=True)
class LSN:
    """Position in the PostgreSQL write-ahead log.

    Attributes:
        value: Unsigned 64-bit integer position

    Example:
        >>> lsn = LSN.parse("16/B374D848")
        >>> str(lsn)
        '16/B374D848'
        >>> lsn.hex
        '16b374d848'
    """

    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= MAX_LSN:
            raise LSNParseError(f"LSN out of range: {self.value}")

    @classmethod
    def parse(cls, text: str) -> LSN:
        """Parse the server form ``XXXXXXXX/XXXXXXXX``.

        Raises:
            LSNParseError: If text is not a valid LSN
        """
        match = _SERVER_FORM.fullmatch(text)
        if match is None:
            raise LSNParseError(f"invalid LSN {text!r}")
        upper, lower = match.groups()
        return cls((int(upper, 16) << 32) | int(lower, 16))

    @classmethod
    def from_hex(cls, text: str) -> LSN:
        """Parse the flat hexadecimal form used in delta filenames.

        Raises:
            LSNParseError: If text is not 1-16 hexadecimal digits
        """
        if _HEX_FORM.fullmatch(text) is None:
            raise LSNParseError(f"invalid hexadecimal LSN {text!r}")
        return cls(int(text, 16))

    @property
    def hex(self) -> str:
        """Flat lowercase hexadecimal form."""
        return format(self.value, "x")

    def __bool__(self) -> bool:
        return self.value != 0

    def __str__(self) -> str:
        return f"{self.value >> 32:X}/{self.value & 0xFFFFFFFF:X}"


ZERO_LSN = LSN(0)
