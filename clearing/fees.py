"""
Clearing - Fee Policy.

============================================================
POLICY
============================================================
service fee = base_service_fee
            + per_packet_fee  * packets
            + per_channel_fee * channels

gas         = base_gas
            + per_packet_gas  * packets
            + per_channel_gas * channels

gas fee     = ceil(gas * gas_price)
total       = service fee + gas fee

The policy is the same for every request type; the type only
decides which target kinds are allowed. All amounts are in the
chain's accepted denom base unit.

============================================================
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict

from .types import ClearingTargets


@dataclass(frozen=True)
class FeeQuote:
    """Fees computed for one request."""

    service_fee: int
    estimated_gas: int
    estimated_gas_fee: int
    total_required: int
    denom: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_fee": str(self.service_fee),
            "estimated_gas": self.estimated_gas,
            "estimated_gas_fee": str(self.estimated_gas_fee),
            "total_required": str(self.total_required),
            "denom": self.denom,
        }


@dataclass
class FeePolicy:
    """Fee schedule for clearing requests."""

    base_service_fee: int = 1_000_000
    per_packet_fee: int = 100_000
    per_channel_fee: int = 500_000

    base_gas: int = 200_000
    per_packet_gas: int = 50_000
    per_channel_gas: int = 250_000
    gas_price: Decimal = Decimal("0.025")

    max_targets: int = 100

    chain_denoms: Dict[str, str] = field(default_factory=lambda: {
        "osmosis-1": "uosmo",
        "cosmoshub-4": "uatom",
        "neutron-1": "untrn",
    })
    default_denom: str = "uatom"

    def accepted_denom(self, chain_id: str) -> str:
        return self.chain_denoms.get(chain_id, self.default_denom)

    def quote(self, chain_id: str, targets: ClearingTargets) -> FeeQuote:
        packets = len(targets.packets)
        channels = len(targets.channels)

        service_fee = (
            self.base_service_fee
            + self.per_packet_fee * packets
            + self.per_channel_fee * channels
        )
        gas = self.base_gas + self.per_packet_gas * packets + self.per_channel_gas * channels
        gas_fee = int(math.ceil(Decimal(gas) * self.gas_price))

        return FeeQuote(
            service_fee=service_fee,
            estimated_gas=gas,
            estimated_gas_fee=gas_fee,
            total_required=service_fee + gas_fee,
            denom=self.accepted_denom(chain_id),
        )


__all__ = [
    "FeeQuote",
    "FeePolicy",
]
