"""Cheap detection of ATP contracts among arbitrary addresses.

Most candidates are wallets or unrelated contracts, so read failures here
are the normal outcome and are never logged as errors.
"""

from __future__ import annotations

import asyncio
import logging
import re

from web3 import AsyncWeb3

from atp_unlock_tracker.chain.abi import GET_BENEFICIARY, GET_TYPE
from atp_unlock_tracker.chain.reader import ContractReader
from atp_unlock_tracker.chain.results import settle

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
VALID_TYPE_DISCRIMINATORS = frozenset({0, 1, 2})

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(address: object) -> bool:
    """Return True for a 0x-prefixed 20-byte hex address other than zero."""
    return (
        isinstance(address, str)
        and _ADDRESS_RE.match(address) is not None
        and address.lower() != ZERO_ADDRESS
    )


class ATPProbe:
    """Classifies addresses as ATP contracts or not."""

    def __init__(self, reader: ContractReader) -> None:
        self._reader = reader

    async def is_atp_contract(self, address: str) -> bool:
        """Return True if ``address`` answers like an ATP contract.

        Both ``getType()`` and ``getBeneficiary()`` must succeed, the type
        must be a known discriminator, and the beneficiary must be an
        address. Any failure means "not an ATP".
        """
        if not is_valid_address(address):
            return False

        kind, beneficiary = await asyncio.gather(
            settle(self._reader.read_view(address, GET_TYPE)),
            settle(self._reader.read_view(address, GET_BENEFICIARY)),
        )
        if not (kind.ok and beneficiary.ok):
            return False

        is_atp = (
            isinstance(kind.value, int)
            and not isinstance(kind.value, bool)
            and kind.value in VALID_TYPE_DISCRIMINATORS
            and isinstance(beneficiary.value, str)
            and AsyncWeb3.is_address(beneficiary.value)
        )
        if is_atp:
            logger.debug("ATP contract detected: %s (type=%s)", address, kind.value)
        return is_atp
