"""Utility functions for the ledger migration tool."""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal

from .constants import TOKEN_DECIMALS

_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """Normalize an account address to its lower-case 0x form.

    Raises:
        ValueError: If the value is not a 20-byte hex address

    Examples:
        >>> normalize_address("ABCDEF0123456789abcdef0123456789ABCDEF01")
        '0xabcdef0123456789abcdef0123456789abcdef01'
    """
    if not isinstance(address, str) or not _ADDRESS_RE.match(address.strip()):
        raise ValueError(f"Invalid address: {address!r}")
    address = address.strip().lower()
    return address if address.startswith("0x") else f"0x{address}"


def format_amount(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Format an integer token amount into a human-readable string.

    Examples:
        >>> format_amount(0)
        '0'
        >>> format_amount(1500000000000000000)
        '1.5'
        >>> format_amount(-2 * 10**18)
        '-2'
    """
    value = Decimal(amount).scaleb(-decimals)
    text = format(value.normalize(), "f")
    return text


async def wait_until(
    condition: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
) -> bool:
    """Poll an async condition until it holds or the timeout elapses.

    The condition is always evaluated at least once. Returns True as soon as
    it holds, False on timeout. Exceptions raised by the condition propagate.
    """
    deadline = time.monotonic() + timeout
    while True:
        if await condition():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))
