"""Tests for the SQLite dedupe store."""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from courier.common.schemas import Outcome, utcnow
from courier.pipeline.dedupe import DedupeStore


class TestReservation:
    @pytest.mark.asyncio
    async def test_new_event_proceeds(self, dedupe_store):
        reservation = await dedupe_store.check_and_reserve("E1")
        assert reservation.proceed
        assert reservation.prior is None
        assert (await dedupe_store.get("E1")).outcome == Outcome.PENDING

    @pytest.mark.asyncio
    async def test_written_is_a_noop(self, dedupe_store):
        await dedupe_store.check_and_reserve("E1")
        await dedupe_store.commit("E1", Outcome.WRITTEN, "Projects/House.md")

        reservation = await dedupe_store.check_and_reserve("E1")

        assert not reservation.proceed
        assert reservation.prior.outcome == Outcome.WRITTEN
        assert reservation.prior.target_location == "Projects/House.md"
        assert (await dedupe_store.get("E1")).attempts == 1

    @pytest.mark.asyncio
    async def test_failed_allows_retry(self, dedupe_store):
        await dedupe_store.check_and_reserve("E1")
        await dedupe_store.commit("E1", Outcome.FAILED, "Projects/House.md")

        reservation = await dedupe_store.check_and_reserve("E1")

        assert reservation.proceed
        assert reservation.prior.outcome == Outcome.FAILED
        record = await dedupe_store.get("E1")
        assert record.outcome == Outcome.PENDING
        assert record.attempts == 2

    @pytest.mark.asyncio
    async def test_live_pending_blocks(self, dedupe_store):
        await dedupe_store.check_and_reserve("E1")
        reservation = await dedupe_store.check_and_reserve("E1")
        assert not reservation.proceed
        assert reservation.prior.outcome == Outcome.PENDING

    @pytest.mark.asyncio
    async def test_stale_pending_taken_over(self, tmp_path):
        store = DedupeStore(tmp_path / "d.sqlite3", reservation_ttl=60)
        await store.check_and_reserve("E1")
        stale = (utcnow() - timedelta(minutes=10)).isoformat()
        with sqlite3.connect(tmp_path / "d.sqlite3") as conn:
            conn.execute("UPDATE dedupe_records SET processed_at = ? WHERE event_id = 'E1'", (stale,))

        reservation = await store.check_and_reserve("E1")

        assert reservation.proceed
        assert reservation.prior.outcome == Outcome.PENDING


class TestCommit:
    @pytest.mark.asyncio
    async def test_written_is_final(self, dedupe_store):
        await dedupe_store.check_and_reserve("E1")
        await dedupe_store.commit("E1", Outcome.WRITTEN, "A.md")

        record = await dedupe_store.commit("E1", Outcome.FAILED, "B.md")

        assert record.outcome == Outcome.WRITTEN
        assert record.target_location == "A.md"

    @pytest.mark.asyncio
    async def test_pending_is_not_a_final_outcome(self, dedupe_store):
        with pytest.raises(ValueError):
            await dedupe_store.commit("E1", Outcome.PENDING)

    @pytest.mark.asyncio
    async def test_commit_without_reservation_inserts(self, dedupe_store):
        record = await dedupe_store.commit("E9", Outcome.FAILED)
        assert record.outcome == Outcome.FAILED
        assert record.target_location is None

    @pytest.mark.asyncio
    async def test_get_unknown(self, dedupe_store):
        assert await dedupe_store.get("missing") is None


class TestConcurrencyAndDurability:
    @pytest.mark.asyncio
    async def test_one_reservation_wins(self, dedupe_store):
        results = await asyncio.gather(*(dedupe_store.check_and_reserve("E1") for _ in range(10)))
        assert sum(r.proceed for r in results) == 1
        assert dedupe_store.active_keys == 0

    @pytest.mark.asyncio
    async def test_two_stores_on_one_file(self, tmp_path):
        """Reservation is atomic in the database, not only in-process"""
        path = tmp_path / "shared.sqlite3"
        a, b = DedupeStore(path), DedupeStore(path)
        results = await asyncio.gather(
            *(store.check_and_reserve("E1") for store in (a, b, a, b))
        )
        assert sum(r.proceed for r in results) == 1

    @pytest.mark.asyncio
    async def test_distinct_ids_independent(self, dedupe_store):
        results = await asyncio.gather(*(dedupe_store.check_and_reserve(f"E{i}") for i in range(10)))
        assert all(r.proceed for r in results)

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        path = tmp_path / "d.sqlite3"
        first = DedupeStore(path)
        await first.check_and_reserve("E1")
        await first.commit("E1", Outcome.WRITTEN, "A.md")

        reopened = DedupeStore(path)
        reservation = await reopened.check_and_reserve("E1")

        assert not reservation.proceed
        assert reservation.prior.target_location == "A.md"
