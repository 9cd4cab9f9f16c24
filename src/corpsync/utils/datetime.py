"""时间处理工具."""

from datetime import UTC, date, datetime


def utc_now() -> datetime:
    """当前 UTC 时间（带时区）."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """
    统一为带时区的 UTC 时间.

    SQLite 不保存时区信息，读回的 naive 时间一律按 UTC 处理。
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_esi_datetime(value: object) -> datetime | None:
    """
    解析 ESI 返回的时间字段.

    ESI 使用 ISO 8601（如 ``2024-05-01T12:00:00Z``），日期字段为 ``2024-05-01``。
    返回带时区的 UTC 时间，无法解析时返回 None。
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time(), tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None

    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"

    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return ensure_utc(parsed)
