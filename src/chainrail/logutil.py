"""Helpers for keeping log lines free of sensitive data."""


def mask_address(address: str, visible: int = 6) -> str:
    """Shorten an address for logging, e.g. ``0x1234...abcd``."""
    if not address or len(address) <= visible * 2:
        return address
    return f"{address[:visible]}...{address[-4:]}"
