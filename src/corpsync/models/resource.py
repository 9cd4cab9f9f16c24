"""ESI 资源类型."""

from enum import StrEnum


class Resource(StrEnum):
    """可同步的 ESI 资源（与存储表一一对应）."""

    CORPORATION_MEMBERS = "corporation_members"
    CORPORATION_ASSETS = "corporation_assets"
    INDUSTRY_JOBS = "industry_jobs"
    MARKET_ORDERS = "market_orders"
    WALLET_TRANSACTIONS = "wallet_transactions"
    MINING_LEDGER = "mining_ledger"
    CONTAINER_LOGS = "container_logs"
    CONTRACTS = "corporation_contracts"
    KILLMAILS = "killmails"
    CUSTOMS_OFFICES = "customs_offices"
    MARKET_PRICES = "item_prices"
