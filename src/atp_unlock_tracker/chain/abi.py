"""View-function descriptors for ATP, ERC-20 and Multicall3 contracts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from eth_abi import decode, encode
from web3 import AsyncWeb3


@dataclass(frozen=True)
class ViewFunction:
    """A read-only contract function with fixed argument and return types."""

    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    selector: bytes = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        digest = AsyncWeb3.keccak(text=self.signature)
        object.__setattr__(self, "selector", bytes(digest[:4]))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    def encode_call(self, args: Sequence[Any] = ()) -> bytes:
        """Build calldata for a call with ``args``."""
        if len(args) != len(self.inputs):
            raise ValueError(
                f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}"
            )
        if not self.inputs:
            return self.selector
        return self.selector + encode(list(self.inputs), list(args))

    def decode_result(self, data: bytes) -> Any:
        """Decode return data; single outputs are unwrapped."""
        values = decode(list(self.outputs), data)
        if len(values) == 1:
            return values[0]
        return tuple(values)


# ATP contract surface
GET_TYPE = ViewFunction("getType", outputs=("uint8",))
GET_BENEFICIARY = ViewFunction("getBeneficiary", outputs=("address",))
GET_ALLOCATION = ViewFunction("getAllocation", outputs=("uint256",))
GET_CLAIMED = ViewFunction("getClaimed", outputs=("uint256",))
GET_CLAIMABLE = ViewFunction("getClaimable", outputs=("uint256",))
GET_IS_REVOKABLE = ViewFunction("getIsRevokable", outputs=("bool",))
GET_IS_REVOKED = ViewFunction("getIsRevoked", outputs=("bool",))
# Lock struct: (startTime, cliff, endTime, allocation), timestamps in seconds
GET_GLOBAL_LOCK = ViewFunction(
    "getGlobalLock",
    outputs=("uint256", "uint256", "uint256", "uint256"),
)
GET_MILESTONE_ID = ViewFunction("getMilestoneId", outputs=("uint256",))
GET_OPERATOR = ViewFunction("getOperator", outputs=("address",))
GET_STAKER = ViewFunction("getStaker", outputs=("address",))

# ERC-20
BALANCE_OF = ViewFunction("balanceOf", inputs=("address",), outputs=("uint256",))

# Multicall3
AGGREGATE3 = ViewFunction(
    "aggregate3",
    inputs=("(address,bool,bytes)[]",),
    outputs=("(bool,bytes)[]",),
)
