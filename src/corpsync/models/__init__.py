"""数据模型."""

from corpsync.models.corporation import (
    ContainerLog,
    CorporationAsset,
    CorporationContract,
    CorporationMember,
    CustomsOffice,
    IndustryJob,
    ItemPrice,
    Killmail,
    MarketOrder,
    MiningLedgerEntry,
    WalletTransaction,
)
from corpsync.models.kv import KeyValueEntry
from corpsync.models.resource import Resource
from corpsync.models.sync import (
    ProcessType,
    SyncHistoryEntry,
    SyncProcessConfig,
    SyncResult,
    SyncStateData,
    SyncStatus,
)

__all__ = [
    "ContainerLog",
    "CorporationAsset",
    "CorporationContract",
    "CorporationMember",
    "CustomsOffice",
    "IndustryJob",
    "ItemPrice",
    "KeyValueEntry",
    "Killmail",
    "MarketOrder",
    "MiningLedgerEntry",
    "ProcessType",
    "Resource",
    "SyncHistoryEntry",
    "SyncProcessConfig",
    "SyncResult",
    "SyncStateData",
    "SyncStatus",
    "WalletTransaction",
]
