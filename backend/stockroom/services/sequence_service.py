# Overview: Date-scoped, database-backed document number allocation.

"""
Sequence generator.

Numbers look like PREFIX-YYYYMMDD-NNNN (e.g. SO-20250615-0001). Each
(prefix, date) pair is an independent scope backed by one SequenceCounter
row, so different days or prefixes never contend with each other.

Allocation is a single atomic UPDATE ... SET last_value = last_value + n
followed by a read of the row the UPDATE has locked. The first allocation
for a scope inserts the row inside a savepoint; losing that insert race to
another writer falls back to the UPDATE. Allocations made inside a caller's
transaction (commit=False) roll back with it, which is the only way a gap
can appear.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import validation_error
from ..extensions import db
from ..models import SequenceCounter
from ..time_utils import to_business_date
from .concurrency import run_in_transaction

logger = logging.getLogger(__name__)

SEQUENCE_PAD = 4
DATE_FORMAT = "%Y%m%d"


def _business_date(on_date):
    try:
        return to_business_date(on_date)
    except ValueError as exc:
        raise validation_error(str(exc), field="on_date") from exc


@dataclass(frozen=True)
class ParsedNumber:
    valid: bool
    prefix: str | None = None
    date: date | None = None
    sequence: int | None = None


def build_scope(prefix: str, on_date=None) -> str:
    if not prefix:
        raise validation_error("prefix is required")
    return f"{prefix}:{_business_date(on_date).strftime(DATE_FORMAT)}"


def format_number(prefix: str, on_date, sequence: int) -> str:
    return f"{prefix}-{_business_date(on_date).strftime(DATE_FORMAT)}-{sequence:0{SEQUENCE_PAD}d}"


def _increment_statement(scope: str, count: int):
    return (
        update(SequenceCounter)
        .where(SequenceCounter.scope == scope)
        .values(last_value=SequenceCounter.last_value + count, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )


def _read_last_value(scope: str) -> int:
    return db.session.query(SequenceCounter.last_value).filter_by(scope=scope).scalar()


def _allocate(scope: str, count: int) -> int:
    """Reserve count numbers in scope; returns the last one reserved."""
    stmt = _increment_statement(scope, count)
    result = db.session.execute(stmt)
    if result.rowcount:
        return _read_last_value(scope)

    try:
        with db.session.begin_nested():
            db.session.add(SequenceCounter(scope=scope, last_value=count))
        return count
    except IntegrityError:
        # Another writer created the scope row first.
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _read_last_value(scope)


def next_sequence(scope: str, *, count: int = 1, commit: bool = True) -> int:
    """
    Atomically reserve count consecutive numbers in scope.

    Returns the first number of the reserved block.
    """
    if not scope:
        raise validation_error("scope is required")
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise validation_error("count must be a positive integer", count=count)

    def _op() -> int:
        last = _allocate(scope, count)
        return last - count + 1

    return run_in_transaction(_op, commit=commit)


def next_number(prefix: str, *, on_date=None, commit: bool = True) -> str:
    """Allocate the next PREFIX-YYYYMMDD-NNNN number (today when on_date is None)."""
    business_date = _business_date(on_date)
    sequence = next_sequence(build_scope(prefix, business_date), commit=commit)
    number = format_number(prefix, business_date, sequence)
    logger.debug("Allocated document number %s", number)
    return number


def next_batch(prefix: str, count: int, *, on_date=None, commit: bool = True) -> list[str]:
    """Allocate count consecutive numbers with one counter update."""
    if count <= 0:
        return []
    business_date = _business_date(on_date)
    first = next_sequence(build_scope(prefix, business_date), count=count, commit=commit)
    return [format_number(prefix, business_date, first + offset) for offset in range(count)]


def reset_sequence(prefix: str, *, on_date=None, start_from: int = 1, commit: bool = True) -> SequenceCounter:
    """
    Administrative reset: the next number issued for the scope is start_from.

    Use with care; numbers below start_from that were already issued will be
    issued again.
    """
    if isinstance(start_from, bool) or not isinstance(start_from, int) or start_from < 1:
        raise validation_error("start_from must be a positive integer", start_from=start_from)

    scope = build_scope(prefix, on_date)

    def _op() -> SequenceCounter:
        counter = db.session.query(SequenceCounter).filter_by(scope=scope).with_for_update().first()
        if counter is None:
            counter = SequenceCounter(scope=scope, last_value=start_from - 1)
            db.session.add(counter)
        else:
            counter.last_value = start_from - 1
        db.session.flush()
        logger.warning("Sequence %s reset; next number will be %d", scope, start_from)
        return counter

    return run_in_transaction(_op, commit=commit)


def current_value(prefix: str, *, on_date=None) -> int:
    """Last number issued for the scope (0 when none yet)."""
    return _read_last_value(build_scope(prefix, on_date)) or 0


def _number_pattern(prefix: str | None) -> re.Pattern:
    prefix_part = re.escape(prefix) if prefix else r"[A-Za-z0-9]+"
    return re.compile(rf"^(?P<prefix>{prefix_part})-(?P<date>\d{{8}})-(?P<sequence>\d{{{SEQUENCE_PAD},}})$")


def validate_number(number: str, prefix: str | None = None) -> bool:
    return parse_number(number, prefix).valid


def parse_number(number: str, prefix: str | None = None) -> ParsedNumber:
    """Split a document number into prefix, scope date and sequence."""
    if not isinstance(number, str):
        return ParsedNumber(valid=False)
    match = _number_pattern(prefix).match(number.strip())
    if not match:
        return ParsedNumber(valid=False)
    try:
        scope_date = datetime.strptime(match.group("date"), DATE_FORMAT).date()
    except ValueError:
        return ParsedNumber(valid=False)
    return ParsedNumber(
        valid=True,
        prefix=match.group("prefix"),
        date=scope_date,
        sequence=int(match.group("sequence")),
    )
