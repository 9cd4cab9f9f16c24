"""军团业务数据表（ESI 同步目标）.

每张表以 ``(corporation_id, 自然键...)`` 为复合主键，保证重复写入幂等；
``last_updated`` 在每次写入时刷新，供数据新鲜度计算使用。
"""

from datetime import date, datetime

from sqlalchemy import BigInteger
from sqlmodel import Field, SQLModel

from corpsync.utils.datetime import utc_now


class CorporationScoped(SQLModel):
    """按军团划分的同步数据基类."""

    corporation_id: int = Field(
        primary_key=True, sa_type=BigInteger, description="所属军团 ID"
    )
    last_updated: datetime = Field(
        default_factory=utc_now,
        index=True,
        description="最近同步写入时间",
    )


class CorporationMember(CorporationScoped, table=True):
    """军团成员（membertracking）."""

    __tablename__ = "corporation_members"  # type: ignore[assignment]

    character_id: int = Field(primary_key=True, sa_type=BigInteger)
    base_id: int | None = Field(default=None, sa_type=BigInteger)
    location_id: int | None = Field(default=None, sa_type=BigInteger)
    ship_type_id: int | None = Field(default=None)
    start_date: datetime | None = Field(default=None)
    logon_date: datetime | None = Field(default=None)
    logoff_date: datetime | None = Field(default=None)


class CorporationAsset(CorporationScoped, table=True):
    """军团资产."""

    __tablename__ = "corporation_assets"  # type: ignore[assignment]

    item_id: int = Field(primary_key=True, sa_type=BigInteger)
    type_id: int
    quantity: int
    location_id: int = Field(sa_type=BigInteger)
    location_type: str = Field(default="station")
    location_flag: str | None = Field(default=None)
    is_singleton: bool = Field(default=False)
    is_blueprint_copy: bool = Field(default=False)


class IndustryJob(CorporationScoped, table=True):
    """工业任务."""

    __tablename__ = "industry_jobs"  # type: ignore[assignment]

    job_id: int = Field(primary_key=True, sa_type=BigInteger)
    installer_id: int = Field(sa_type=BigInteger)
    facility_id: int = Field(sa_type=BigInteger)
    activity_id: int
    blueprint_id: int = Field(sa_type=BigInteger)
    blueprint_type_id: int
    product_type_id: int | None = Field(default=None)
    runs: int
    status: str
    cost: float | None = Field(default=None)
    duration: int
    start_date: datetime | None = Field(default=None)
    end_date: datetime | None = Field(default=None)
    completed_date: datetime | None = Field(default=None)


class MarketOrder(CorporationScoped, table=True):
    """市场订单."""

    __tablename__ = "market_orders"  # type: ignore[assignment]

    order_id: int = Field(primary_key=True, sa_type=BigInteger)
    type_id: int
    location_id: int = Field(sa_type=BigInteger)
    region_id: int
    price: float
    volume_total: int
    volume_remain: int
    min_volume: int | None = Field(default=None)
    duration: int
    is_buy_order: bool = Field(default=False)
    issued: datetime | None = Field(default=None)
    range: str | None = Field(default=None)
    wallet_division: int | None = Field(default=None)


class WalletTransaction(CorporationScoped, table=True):
    """钱包交易记录."""

    __tablename__ = "wallet_transactions"  # type: ignore[assignment]

    transaction_id: int = Field(primary_key=True, sa_type=BigInteger)
    division: int
    client_id: int = Field(sa_type=BigInteger)
    transaction_date: datetime | None = Field(default=None)
    is_buy: bool
    journal_ref_id: int = Field(sa_type=BigInteger)
    location_id: int = Field(sa_type=BigInteger)
    quantity: int
    type_id: int
    unit_price: float


class MiningLedgerEntry(CorporationScoped, table=True):
    """采矿观察站记录."""

    __tablename__ = "mining_ledger"  # type: ignore[assignment]

    observer_id: int = Field(primary_key=True, sa_type=BigInteger)
    character_id: int = Field(primary_key=True, sa_type=BigInteger)
    type_id: int = Field(primary_key=True)
    ledger_date: date = Field(primary_key=True)
    quantity: int
    recorded_corporation_id: int | None = Field(default=None, sa_type=BigInteger)


class ContainerLog(CorporationScoped, table=True):
    """容器操作日志."""

    __tablename__ = "container_logs"  # type: ignore[assignment]

    container_id: int = Field(primary_key=True, sa_type=BigInteger)
    logged_at: datetime = Field(primary_key=True)
    character_id: int = Field(primary_key=True, sa_type=BigInteger)
    action: str = Field(primary_key=True)
    container_type_id: int | None = Field(default=None)
    location_id: int | None = Field(default=None, sa_type=BigInteger)
    location_flag: str | None = Field(default=None)
    type_id: int | None = Field(default=None)
    quantity: int | None = Field(default=None)


class CorporationContract(CorporationScoped, table=True):
    """军团合同."""

    __tablename__ = "corporation_contracts"  # type: ignore[assignment]

    contract_id: int = Field(primary_key=True, sa_type=BigInteger)
    issuer_id: int = Field(sa_type=BigInteger)
    issuer_corporation_id: int = Field(sa_type=BigInteger)
    assignee_id: int | None = Field(default=None, sa_type=BigInteger)
    acceptor_id: int | None = Field(default=None, sa_type=BigInteger)
    type: str
    status: str
    availability: str | None = Field(default=None)
    title: str | None = Field(default=None)
    price: float | None = Field(default=None)
    reward: float | None = Field(default=None)
    collateral: float | None = Field(default=None)
    volume: float | None = Field(default=None)
    date_issued: datetime | None = Field(default=None)
    date_expired: datetime | None = Field(default=None)
    date_completed: datetime | None = Field(default=None)


class Killmail(CorporationScoped, table=True):
    """近期击毁记录（仅 ID 与 hash）."""

    __tablename__ = "killmails"  # type: ignore[assignment]

    killmail_id: int = Field(primary_key=True, sa_type=BigInteger)
    killmail_hash: str


class CustomsOffice(CorporationScoped, table=True):
    """行星海关."""

    __tablename__ = "customs_offices"  # type: ignore[assignment]

    office_id: int = Field(primary_key=True, sa_type=BigInteger)
    system_id: int
    alliance_tax_rate: float | None = Field(default=None)
    corporation_tax_rate: float | None = Field(default=None)
    standing_level: str | None = Field(default=None)
    allow_access_with_standings: bool = Field(default=False)
    allow_alliance_access: bool = Field(default=False)
    reinforce_exit_start: int | None = Field(default=None)
    reinforce_exit_end: int | None = Field(default=None)


class ItemPrice(CorporationScoped, table=True):
    """物品参考价格."""

    __tablename__ = "item_prices"  # type: ignore[assignment]

    type_id: int = Field(primary_key=True)
    adjusted_price: float | None = Field(default=None)
    average_price: float | None = Field(default=None)
