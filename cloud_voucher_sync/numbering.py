"""Display formatting for allocated voucher numbers."""
from __future__ import annotations
from typing import Optional

DEFAULT_PREFIX = "AQNS"


def format_voucher_no(n: int, prefix: str = DEFAULT_PREFIX) -> str:
    """
    Format a counter value as a voucher number.

    The numeric part is zero-padded to at least 3 digits below 1000 and
    at least 4 digits from 1000 on; larger numbers are never truncated.

        >>> format_voucher_no(1)
        'AQNS/001'
        >>> format_voucher_no(10000)
        'AQNS/10000'
    """
    width = 4 if n >= 1000 else 3
    return f"{prefix}/{n:0{width}d}"


def parse_voucher_no(voucher_no: str, prefix: Optional[str] = None) -> int:
    """Recover the counter value from a formatted voucher number."""
    head, sep, digits = voucher_no.strip().rpartition("/")
    if not sep or not digits.isdigit():
        raise ValueError(f"Not a numbered voucher: {voucher_no!r}")
    if prefix is not None and head != prefix:
        raise ValueError(f"Voucher {voucher_no!r} does not use prefix {prefix!r}")
    return int(digits)
