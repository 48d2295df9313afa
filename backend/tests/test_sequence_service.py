from datetime import date, datetime

import pytest

from stockroom.errors import ErrorCode, InventoryError
from stockroom.models import SequenceCounter
from stockroom.services import sequence_service

DAY = date(2025, 6, 15)


def test_first_number_of_a_scope(db_session):
    assert sequence_service.next_number("SO", on_date=DAY) == "SO-20250615-0001"
    assert sequence_service.next_number("SO", on_date=DAY) == "SO-20250615-0002"


def test_scopes_are_independent(db_session):
    sequence_service.next_number("SO", on_date=DAY)
    sequence_service.next_number("SO", on_date=DAY)

    assert sequence_service.next_number("SO", on_date=date(2025, 6, 16)) == "SO-20250616-0001"
    assert sequence_service.next_number("PO", on_date=DAY) == "PO-20250615-0001"
    assert db_session.query(SequenceCounter).count() == 3


def test_datetime_and_iso_dates_map_to_the_same_scope(db_session):
    sequence_service.next_number("SO", on_date=datetime(2025, 6, 15, 23, 59))
    assert sequence_service.next_number("SO", on_date="2025-06-15") == "SO-20250615-0002"


def test_next_batch_is_consecutive(db_session):
    sequence_service.next_number("SO", on_date=DAY)

    batch = sequence_service.next_batch("SO", 3, on_date=DAY)

    assert batch == ["SO-20250615-0002", "SO-20250615-0003", "SO-20250615-0004"]
    assert sequence_service.current_value("SO", on_date=DAY) == 4
    assert sequence_service.next_batch("SO", 0, on_date=DAY) == []


def test_reset_sequence(db_session):
    sequence_service.next_batch("SO", 5, on_date=DAY)

    sequence_service.reset_sequence("SO", on_date=DAY, start_from=100)

    assert sequence_service.next_number("SO", on_date=DAY) == "SO-20250615-0100"


def test_reset_rejects_non_positive_start(db_session):
    with pytest.raises(InventoryError) as exc_info:
        sequence_service.reset_sequence("SO", on_date=DAY, start_from=0)
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR


def test_padding_widens_past_9999(db_session):
    sequence_service.reset_sequence("SO", on_date=DAY, start_from=10000)
    assert sequence_service.next_number("SO", on_date=DAY) == "SO-20250615-10000"


def test_allocation_inside_caller_transaction_rolls_back(db_session):
    sequence_service.next_number("SO", on_date=DAY)
    sequence_service.next_number("SO", on_date=DAY, commit=False)
    db_session.rollback()

    assert sequence_service.next_number("SO", on_date=DAY) == "SO-20250615-0002"


def test_parse_and_validate_number():
    parsed = sequence_service.parse_number("PO-20250615-0042")
    assert parsed.valid
    assert parsed.prefix == "PO"
    assert parsed.date == DAY
    assert parsed.sequence == 42

    assert sequence_service.validate_number("SO-20250615-0001", "SO")
    assert not sequence_service.validate_number("SO-20250615-0001", "PO")
    assert not sequence_service.validate_number("SO-20251345-0001")
    assert not sequence_service.validate_number("SO-2025061-0001")
    assert not sequence_service.parse_number(None).valid


@pytest.mark.parametrize("on_date", ["2025-13-40", "yesterday", 20250615])
def test_bad_date_is_a_validation_error(db_session, on_date):
    with pytest.raises(InventoryError) as exc_info:
        sequence_service.next_number("SO", on_date=on_date)
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR
    assert exc_info.value.context["field"] == "on_date"
    assert db_session.query(SequenceCounter).count() == 0
