"""Account-index to address resolution."""

from __future__ import annotations

from typing import Union

ZERO = "zero"
TOKEN = "token"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

AccountIndex = Union[int, str]


class AccountBook:
    """Maps logical account selectors to real identities.

    Selectors are non-negative account indexes, :data:`ZERO` (the zero
    address, used to exercise zero-address rejections) and :data:`TOKEN`
    (the deployed token contract).
    """

    def __init__(self, addresses: list[str], token_address: str = "") -> None:
        if not addresses:
            raise ValueError("an account book needs at least one account")
        self._addresses = list(addresses)
        self._token_address = token_address
        self._index = {addr.lower(): i for i, addr in enumerate(self._addresses)}

    def __len__(self) -> int:
        return len(self._addresses)

    @property
    def indexes(self) -> range:
        return range(len(self._addresses))

    @property
    def token_address(self) -> str:
        return self._token_address

    def address(self, selector: AccountIndex) -> str:
        if selector == ZERO:
            return ZERO_ADDRESS
        if selector == TOKEN:
            if not self._token_address:
                raise KeyError("token address is not known")
            return self._token_address
        return self._addresses[selector]

    def index_of(self, address: str) -> AccountIndex | None:
        """Selector for an address, or None for identities outside the book."""
        if address.lower() == ZERO_ADDRESS:
            return ZERO
        if self._token_address and address.lower() == self._token_address.lower():
            return TOKEN
        return self._index.get(address.lower())

    @staticmethod
    def is_zero(selector: AccountIndex | None) -> bool:
        return selector == ZERO
