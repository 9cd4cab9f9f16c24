"""ESI 记录映射测试."""

from datetime import UTC, date, datetime

import pytest

from corpsync.core.errors import ErrorCategory, RecordValidationError
from corpsync.core.storage import TABLE_MODELS
from corpsync.core.transforms import TRANSFORMS, transform_records
from corpsync.models.resource import Resource


class TestTransforms:
    """映射函数测试."""

    def test_every_resource_has_transform_and_table(self) -> None:
        """每种资源都有映射与目标表."""
        assert set(TRANSFORMS) == set(Resource)
        assert set(TABLE_MODELS) == set(Resource)

    def test_member_dates_are_parsed(self) -> None:
        """成员时间字段解析为带时区的 UTC 时间."""
        [row] = transform_records(
            Resource.CORPORATION_MEMBERS,
            [{"character_id": 1, "logon_date": "2024-05-01T12:30:00Z"}],
        )

        assert row["logon_date"] == datetime(2024, 5, 1, 12, 30, tzinfo=UTC)
        assert row["logoff_date"] is None

    def test_wallet_date_maps_to_transaction_date(self) -> None:
        [row] = transform_records(
            Resource.WALLET_TRANSACTIONS,
            [
                {
                    "transaction_id": 5,
                    "division": 2,
                    "client_id": 7,
                    "date": "2024-04-01T08:00:00Z",
                    "is_buy": True,
                    "journal_ref_id": 9,
                    "location_id": 60003760,
                    "quantity": 3,
                    "type_id": 34,
                    "unit_price": 5.5,
                }
            ],
        )

        assert row["transaction_date"] == datetime(2024, 4, 1, 8, 0, tzinfo=UTC)
        assert row["division"] == 2
        assert "date" not in row

    def test_mining_entry_uses_ledger_date(self) -> None:
        """采矿记录的 last_updated 是账目日期."""
        [row] = transform_records(
            Resource.MINING_LEDGER,
            [
                {
                    "observer_id": 1,
                    "character_id": 2,
                    "type_id": 1230,
                    "last_updated": "2024-05-01",
                    "quantity": 100,
                    "recorded_corporation_id": 98000001,
                }
            ],
        )

        assert row["ledger_date"] == date(2024, 5, 1)
        assert "last_updated" not in row

    def test_asset_location_type_defaults_to_station(self) -> None:
        [row] = transform_records(
            Resource.CORPORATION_ASSETS,
            [{"item_id": 1, "type_id": 34, "quantity": 1, "location_id": 2}],
        )
        assert row["location_type"] == "station"
        assert row["is_blueprint_copy"] is False

    def test_missing_key_raises_validation_error(self) -> None:
        """缺少自然键字段时校验失败."""
        with pytest.raises(RecordValidationError) as exc_info:
            transform_records(Resource.CORPORATION_MEMBERS, [{"base_id": 1}])

        assert exc_info.value.category == ErrorCategory.VALIDATION
        assert "character_id" in str(exc_info.value)

    def test_non_object_record_raises_validation_error(self) -> None:
        with pytest.raises(RecordValidationError):
            transform_records(Resource.KILLMAILS, ["not-a-record"])

    def test_unparseable_container_log_time(self) -> None:
        with pytest.raises(RecordValidationError):
            transform_records(
                Resource.CONTAINER_LOGS,
                [
                    {
                        "container_id": 1,
                        "logged_at": "yesterday",
                        "character_id": 2,
                        "action": "lock",
                    }
                ],
            )
