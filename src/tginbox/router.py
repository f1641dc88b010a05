from __future__ import annotations

from collections.abc import Sequence

from .model import Account


def route(accounts: Sequence[Account], address: str) -> Account:
    """Pick the destination account for a recipient address.

    The first account whose address matches exactly (case-sensitive) wins;
    unmatched addresses fall back to the first configured account. The
    list is validated non-empty when the config is loaded.
    """
    for account in accounts:
        if account.address == address:
            return account
    return accounts[0]
