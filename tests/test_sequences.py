"""Tests for identifier allocation."""

import pytest
from sqlalchemy import delete, insert

from printshop.db import id_sequences, orders
from printshop.errors import StorageError, ValidationError
from printshop.models import SequenceDomain
from printshop.sequences import format_id, next_id, parse_id


class TestFormatting:
    def test_zero_padded(self):
        assert format_id(SequenceDomain.ORDER, 1) == "ord00001"
        assert format_id(SequenceDomain.MESSAGE, 42) == "msg00042"

    def test_wide_numbers_kept_whole(self):
        assert format_id(SequenceDomain.PRODUCT, 123456) == "prd123456"

    def test_parse(self):
        assert parse_id(SequenceDomain.STATUS, "stt00007") == 7

    @pytest.mark.parametrize("value", ["prd00001", "ord", "ordABCDE", ""])
    def test_parse_rejects_foreign_ids(self, value):
        with pytest.raises(ValidationError):
            parse_id(SequenceDomain.ORDER, value)


class TestNextId:
    def test_first_id(self, database):
        with database.transaction() as conn:
            assert next_id(conn, SequenceDomain.ORDER) == "ord00001"

    def test_consecutive(self, database):
        with database.transaction() as conn:
            ids = [next_id(conn, SequenceDomain.PRODUCT) for _ in range(3)]
        assert ids == ["prd00001", "prd00002", "prd00003"]

    def test_domains_are_independent(self, database):
        with database.transaction() as conn:
            next_id(conn, SequenceDomain.ORDER)
            next_id(conn, SequenceDomain.ORDER)
            assert next_id(conn, SequenceDomain.MESSAGE) == "msg00001"

    def test_continues_after_highest_stored(self, database):
        """Rows written without the allocator are never reissued."""
        with database.transaction() as conn:
            conn.execute(
                insert(orders).values(
                    order_id="ord00042", email="legacy@example.com", payment_status="Approved"
                )
            )
        with database.transaction() as conn:
            assert next_id(conn, SequenceDomain.ORDER) == "ord00043"

    def test_rolled_back_allocation_is_reused(self, database):
        with pytest.raises(RuntimeError):
            with database.transaction() as conn:
                next_id(conn, SequenceDomain.ORDER)
                raise RuntimeError("abort")
        with database.transaction() as conn:
            assert next_id(conn, SequenceDomain.ORDER) == "ord00001"

    def test_missing_counter_row(self, database):
        with database.transaction() as conn:
            conn.execute(delete(id_sequences).where(id_sequences.c.domain == "order"))
        with pytest.raises(StorageError):
            with database.transaction() as conn:
                next_id(conn, SequenceDomain.ORDER)
