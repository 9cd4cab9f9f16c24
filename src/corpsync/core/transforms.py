"""ESI 记录到存储行的纯映射."""

from collections.abc import Callable
from datetime import date
from typing import Any

from corpsync.core.errors import RecordValidationError
from corpsync.models.resource import Resource
from corpsync.utils.datetime import parse_esi_datetime

Record = dict[str, Any]


def _require(record: Any, resource: Resource, *keys: str) -> None:
    """校验记录结构与自然键字段."""
    if not isinstance(record, dict):
        msg = f"{resource}: 记录不是对象: {record!r}"
        raise RecordValidationError(msg)
    missing = [key for key in keys if record.get(key) is None]
    if missing:
        msg = f"{resource}: 记录缺少字段 {', '.join(missing)}"
        raise RecordValidationError(msg)


def _parse_date(value: Any) -> date | None:
    parsed = parse_esi_datetime(value)
    return parsed.date() if parsed else None


def _member(r: Record) -> Record:
    _require(r, Resource.CORPORATION_MEMBERS, "character_id")
    return {
        "character_id": r["character_id"],
        "base_id": r.get("base_id"),
        "location_id": r.get("location_id"),
        "ship_type_id": r.get("ship_type_id"),
        "start_date": parse_esi_datetime(r.get("start_date")),
        "logon_date": parse_esi_datetime(r.get("logon_date")),
        "logoff_date": parse_esi_datetime(r.get("logoff_date")),
    }


def _asset(r: Record) -> Record:
    _require(
        r,
        Resource.CORPORATION_ASSETS,
        "item_id",
        "type_id",
        "quantity",
        "location_id",
    )
    return {
        "item_id": r["item_id"],
        "type_id": r["type_id"],
        "quantity": r["quantity"],
        "location_id": r["location_id"],
        "location_type": r.get("location_type") or "station",
        "location_flag": r.get("location_flag"),
        "is_singleton": bool(r.get("is_singleton")),
        "is_blueprint_copy": bool(r.get("is_blueprint_copy")),
    }


def _industry_job(r: Record) -> Record:
    _require(
        r,
        Resource.INDUSTRY_JOBS,
        "job_id",
        "installer_id",
        "facility_id",
        "activity_id",
        "blueprint_id",
        "blueprint_type_id",
        "runs",
        "status",
        "duration",
    )
    return {
        "job_id": r["job_id"],
        "installer_id": r["installer_id"],
        "facility_id": r["facility_id"],
        "activity_id": r["activity_id"],
        "blueprint_id": r["blueprint_id"],
        "blueprint_type_id": r["blueprint_type_id"],
        "product_type_id": r.get("product_type_id"),
        "runs": r["runs"],
        "status": r["status"],
        "cost": r.get("cost"),
        "duration": r["duration"],
        "start_date": parse_esi_datetime(r.get("start_date")),
        "end_date": parse_esi_datetime(r.get("end_date")),
        "completed_date": parse_esi_datetime(r.get("completed_date")),
    }


def _market_order(r: Record) -> Record:
    _require(
        r,
        Resource.MARKET_ORDERS,
        "order_id",
        "type_id",
        "location_id",
        "region_id",
        "price",
        "volume_total",
        "volume_remain",
        "duration",
    )
    return {
        "order_id": r["order_id"],
        "type_id": r["type_id"],
        "location_id": r["location_id"],
        "region_id": r["region_id"],
        "price": r["price"],
        "volume_total": r["volume_total"],
        "volume_remain": r["volume_remain"],
        "min_volume": r.get("min_volume"),
        "duration": r["duration"],
        "is_buy_order": bool(r.get("is_buy_order")),
        "issued": parse_esi_datetime(r.get("issued")),
        "range": r.get("range"),
        "wallet_division": r.get("wallet_division"),
    }


def _wallet_transaction(r: Record) -> Record:
    _require(
        r,
        Resource.WALLET_TRANSACTIONS,
        "transaction_id",
        "division",
        "client_id",
        "is_buy",
        "journal_ref_id",
        "location_id",
        "quantity",
        "type_id",
        "unit_price",
    )
    return {
        "transaction_id": r["transaction_id"],
        "division": r["division"],
        "client_id": r["client_id"],
        "transaction_date": parse_esi_datetime(r.get("date")),
        "is_buy": bool(r["is_buy"]),
        "journal_ref_id": r["journal_ref_id"],
        "location_id": r["location_id"],
        "quantity": r["quantity"],
        "type_id": r["type_id"],
        "unit_price": r["unit_price"],
    }


def _mining_entry(r: Record) -> Record:
    _require(
        r,
        Resource.MINING_LEDGER,
        "observer_id",
        "character_id",
        "type_id",
        "last_updated",
        "quantity",
    )
    ledger_date = _parse_date(r["last_updated"])
    if ledger_date is None:
        msg = f"{Resource.MINING_LEDGER}: 无法解析日期 {r['last_updated']!r}"
        raise RecordValidationError(msg)
    return {
        "observer_id": r["observer_id"],
        "character_id": r["character_id"],
        "type_id": r["type_id"],
        "ledger_date": ledger_date,
        "quantity": r["quantity"],
        "recorded_corporation_id": r.get("recorded_corporation_id"),
    }


def _container_log(r: Record) -> Record:
    _require(
        r,
        Resource.CONTAINER_LOGS,
        "container_id",
        "logged_at",
        "character_id",
        "action",
    )
    logged_at = parse_esi_datetime(r["logged_at"])
    if logged_at is None:
        msg = f"{Resource.CONTAINER_LOGS}: 无法解析时间 {r['logged_at']!r}"
        raise RecordValidationError(msg)
    return {
        "container_id": r["container_id"],
        "logged_at": logged_at,
        "character_id": r["character_id"],
        "action": r["action"],
        "container_type_id": r.get("container_type_id"),
        "location_id": r.get("location_id"),
        "location_flag": r.get("location_flag"),
        "type_id": r.get("type_id"),
        "quantity": r.get("quantity"),
    }


def _contract(r: Record) -> Record:
    _require(
        r,
        Resource.CONTRACTS,
        "contract_id",
        "issuer_id",
        "issuer_corporation_id",
        "type",
        "status",
    )
    return {
        "contract_id": r["contract_id"],
        "issuer_id": r["issuer_id"],
        "issuer_corporation_id": r["issuer_corporation_id"],
        "assignee_id": r.get("assignee_id"),
        "acceptor_id": r.get("acceptor_id"),
        "type": r["type"],
        "status": r["status"],
        "availability": r.get("availability"),
        "title": r.get("title"),
        "price": r.get("price"),
        "reward": r.get("reward"),
        "collateral": r.get("collateral"),
        "volume": r.get("volume"),
        "date_issued": parse_esi_datetime(r.get("date_issued")),
        "date_expired": parse_esi_datetime(r.get("date_expired")),
        "date_completed": parse_esi_datetime(r.get("date_completed")),
    }


def _killmail(r: Record) -> Record:
    _require(r, Resource.KILLMAILS, "killmail_id", "killmail_hash")
    return {"killmail_id": r["killmail_id"], "killmail_hash": r["killmail_hash"]}


def _customs_office(r: Record) -> Record:
    _require(r, Resource.CUSTOMS_OFFICES, "office_id", "system_id")
    return {
        "office_id": r["office_id"],
        "system_id": r["system_id"],
        "alliance_tax_rate": r.get("alliance_tax_rate"),
        "corporation_tax_rate": r.get("corporation_tax_rate"),
        "standing_level": r.get("standing_level"),
        "allow_access_with_standings": bool(r.get("allow_access_with_standings")),
        "allow_alliance_access": bool(r.get("allow_alliance_access")),
        "reinforce_exit_start": r.get("reinforce_exit_start"),
        "reinforce_exit_end": r.get("reinforce_exit_end"),
    }


def _item_price(r: Record) -> Record:
    _require(r, Resource.MARKET_PRICES, "type_id")
    return {
        "type_id": r["type_id"],
        "adjusted_price": r.get("adjusted_price"),
        "average_price": r.get("average_price"),
    }


TRANSFORMS: dict[Resource, Callable[[Record], Record]] = {
    Resource.CORPORATION_MEMBERS: _member,
    Resource.CORPORATION_ASSETS: _asset,
    Resource.INDUSTRY_JOBS: _industry_job,
    Resource.MARKET_ORDERS: _market_order,
    Resource.WALLET_TRANSACTIONS: _wallet_transaction,
    Resource.MINING_LEDGER: _mining_entry,
    Resource.CONTAINER_LOGS: _container_log,
    Resource.CONTRACTS: _contract,
    Resource.KILLMAILS: _killmail,
    Resource.CUSTOMS_OFFICES: _customs_office,
    Resource.MARKET_PRICES: _item_price,
}


def transform_records(resource: Resource, records: list[Any]) -> list[Record]:
    """
    将 ESI 记录映射为存储行.

    Raises:
        RecordValidationError: 任一记录结构不合法
    """
    transform = TRANSFORMS[resource]
    return [transform(record) for record in records]
