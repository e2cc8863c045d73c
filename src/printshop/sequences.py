"""Prefixed, zero-padded identifier allocation (ord00001, prd00001, ...)."""

import structlog
from sqlalchemy import Integer, case, cast, func, select, update
from sqlalchemy.engine import Connection

from .db import DOMAIN_COLUMNS, id_sequences
from .errors import StorageError, ValidationError
from .models import SequenceDomain

logger = structlog.get_logger(__name__)

SUFFIX_WIDTH = 5


def format_id(domain: SequenceDomain, number: int) -> str:
    """Render ``number`` in a domain's series; wider numbers are kept whole."""
    return f"{domain.prefix}{number:0{SUFFIX_WIDTH}d}"


def parse_id(domain: SequenceDomain, value: str) -> int:
    """
    Return the numeric suffix of an identifier.

    Raises:
        ValidationError: If the prefix doesn't match the domain or the suffix isn't numeric.
    """
    prefix = domain.prefix
    suffix = value[len(prefix):]
    if not value.startswith(prefix) or not suffix.isdigit():
        raise ValidationError(f"Invalid {domain.value} identifier: {value}")
    return int(suffix)


def _highest_stored_suffix(domain: SequenceDomain):
    """Scalar subquery: largest numeric suffix present in the domain's table, or 0."""
    column = DOMAIN_COLUMNS[domain]
    prefix = domain.prefix
    suffix = cast(func.substr(column, len(prefix) + 1), Integer)
    return (
        select(func.coalesce(func.max(suffix), 0))
        .where(column.like(prefix + "%"))
        .scalar_subquery()
    )


def next_id(conn: Connection, domain: SequenceDomain) -> str:
    """
    Allocate the next identifier of ``domain`` inside the caller's transaction.

    A single UPDATE bumps the domain counter to one past the larger of its
    current value and the highest suffix already stored, so rows written
    outside the allocator are never reissued. The row lock it takes is held
    until the caller commits, serializing concurrent allocators.

    Raises:
        StorageError: If the counter row is missing (schema not initialised).
    """
    highest = _highest_stored_suffix(domain)
    current = id_sequences.c.last_value
    result = conn.execute(
        update(id_sequences)
        .where(id_sequences.c.domain == domain.value)
        .values(last_value=case((current >= highest, current), else_=highest) + 1)
    )
    if result.rowcount != 1:
        raise StorageError("next_id", "sequence counter missing", domain=domain.value)

    number = conn.scalar(
        select(id_sequences.c.last_value).where(id_sequences.c.domain == domain.value)
    )
    allocated = format_id(domain, number)
    logger.debug("id_allocated", domain=domain.value, id=allocated)
    return allocated
