"""
Pydantic Schemas for the Relay Monitor API.

Request bodies accept both snake_case and the camelCase names
the dashboard frontend sends.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clearing.types import ChannelPair, ClearingTargets, PacketIdentifier, RequestType


# =============================================================
# ENUMS
# =============================================================

class RequestTypeEnum(str, Enum):
    PACKET = "packet"
    CHANNEL = "channel"
    BULK = "bulk"


# =============================================================
# CLEARING TARGETS
# =============================================================

class PacketIdentifierSchema(BaseModel):
    """One packet to clear."""
    model_config = ConfigDict(populate_by_name=True)

    chain_id: str = Field(alias="chainId")
    channel_id: str = Field(alias="channelId")
    port_id: str = Field(default="transfer", alias="portId")
    sequence: int


class ChannelPairSchema(BaseModel):
    """A channel pair to clear as a whole."""
    model_config = ConfigDict(populate_by_name=True)

    src_chain: str = Field(alias="srcChain")
    dst_chain: str = Field(alias="dstChain")
    src_channel: str = Field(alias="srcChannel")
    dst_channel: str = Field(alias="dstChannel")
    src_port: str = Field(default="transfer", alias="srcPort")


class ClearingTargetsSchema(BaseModel):
    packets: List[PacketIdentifierSchema] = Field(default_factory=list)
    channels: List[ChannelPairSchema] = Field(default_factory=list)

    def to_targets(self) -> ClearingTargets:
        return ClearingTargets(
            packets=tuple(
                PacketIdentifier(
                    chain_id=p.chain_id,
                    channel_id=p.channel_id,
                    sequence=p.sequence,
                    port_id=p.port_id,
                )
                for p in self.packets
            ),
            channels=tuple(
                ChannelPair(
                    src_chain=c.src_chain,
                    dst_chain=c.dst_chain,
                    src_channel=c.src_channel,
                    dst_channel=c.dst_channel,
                    src_port=c.src_port,
                )
                for c in self.channels
            ),
        )


# =============================================================
# CLEARING REQUESTS
# =============================================================

class TokenRequestCreate(BaseModel):
    """Body of POST /api/clearing/token."""
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(alias="walletAddress")
    chain_id: str = Field(alias="chainId")
    request_type: RequestTypeEnum = Field(alias="type")
    targets: ClearingTargetsSchema = Field(default_factory=ClearingTargetsSchema)

    def to_request_type(self) -> RequestType:
        return RequestType(self.request_type.value)


class PaymentVerificationCreate(BaseModel):
    """Body of POST /api/clearing/verify."""
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1)
    tx_hash: str = Field(alias="txHash", min_length=1)


# =============================================================
# CHANNEL RESOLUTION
# =============================================================

class ChannelKeySchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chain_id: str = Field(alias="chainId", min_length=1)
    channel_id: str = Field(alias="channelId", min_length=1)
    port_id: Optional[str] = Field(default="transfer", alias="portId")


class ResolveBatchCreate(BaseModel):
    """Body of POST /api/channels/resolve-batch."""
    channels: List[ChannelKeySchema] = Field(min_length=1, max_length=100)


# =============================================================
# WEBSOCKET MESSAGES
# =============================================================

class SubscriptionMessage(BaseModel):
    """Client message on the clearing updates socket."""
    type: str
    token: str = Field(min_length=1)
