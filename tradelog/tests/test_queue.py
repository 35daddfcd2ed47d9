"""Tests for the CUSIP retry queue state machine."""

from unittest.mock import MagicMock

import pytest

from tradelog.resolvers.queue import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    MemoryQueueStore,
    ResolutionQueueItem,
    SupabaseQueueStore,
    backoff_seconds,
)

CUSIP = "037833100"


@pytest.fixture
def queue(clock):
    return MemoryQueueStore(clock=clock)


class TestBackoff:
    def test_schedule(self):
        assert backoff_seconds(0) == 0
        assert backoff_seconds(1) == 30
        assert backoff_seconds(2) == 60
        assert backoff_seconds(3) == 300
        assert backoff_seconds(4) == 900
        assert backoff_seconds(5) == 1800

    def test_clamped(self):
        assert backoff_seconds(12) == 1800


class TestEnqueue:
    def test_new_item(self, queue):
        item = queue.enqueue(CUSIP, priority=2, user_id="u1")
        assert item.status == PENDING
        assert item.attempts == 0
        assert item.user_ids == ["u1"]
        assert queue.get(CUSIP).priority == 2

    def test_repeat_keeps_max_priority_and_merges_users(self, queue):
        queue.enqueue(CUSIP, priority=3, user_id="u1")
        queue.enqueue(CUSIP, priority=1, user_id="u2")
        queue.enqueue(CUSIP, priority=1, user_id="u1")
        item = queue.get(CUSIP)
        assert item.priority == 3
        assert item.user_ids == ["u1", "u2"]

    def test_identifier_normalized(self, queue):
        queue.enqueue(" 037833100 ")
        assert queue.get(CUSIP) is not None

    def test_stored_copy_is_isolated(self, queue):
        item = queue.enqueue(CUSIP, user_id="u1")
        item.user_ids.append("intruder")
        assert queue.get(CUSIP).user_ids == ["u1"]

    def test_merge_does_not_overwrite_concurrent_completion(self, clock):
        class RacingStore(MemoryQueueStore):
            """Runs ``race`` once, right after the next read."""

            race = None

            def _load(self, identifier):
                item = super()._load(identifier)
                if self.race is not None:
                    race, self.race = self.race, None
                    race()
                return item

        queue = RacingStore(clock=clock)
        queue.enqueue(CUSIP, user_id="u1")
        queue.claim(1)
        queue.race = lambda: queue.complete(CUSIP, "AAPL", "provider")

        item = queue.enqueue(CUSIP, user_id="u2")

        assert item.status == COMPLETED
        stored = queue.get(CUSIP)
        assert stored.status == COMPLETED
        assert stored.ticker == "AAPL"
        assert stored.user_ids == ["u1", "u2"]


class TestClaim:
    def test_claim_marks_processing(self, queue, clock):
        queue.enqueue(CUSIP)
        claimed = queue.claim(5)
        assert [i.identifier for i in claimed] == [CUSIP]
        item = queue.get(CUSIP)
        assert item.status == PROCESSING
        assert item.last_attempt_at == clock.now

    def test_claim_once(self, queue):
        queue.enqueue(CUSIP)
        assert len(queue.claim(5)) == 1
        assert queue.claim(5) == []

    def test_priority_order_and_limit(self, queue, clock):
        queue.enqueue("A00000000", priority=1)
        clock.advance(1)
        queue.enqueue("B00000000", priority=5)
        clock.advance(1)
        queue.enqueue("C00000000", priority=1)
        claimed = queue.claim(2)
        assert [i.identifier for i in claimed] == ["B00000000", "A00000000"]

    def test_backoff_gates_retry(self, queue, clock):
        queue.enqueue(CUSIP)
        queue.claim(1)
        queue.fail(CUSIP, "nothing found")
        clock.advance(29)
        assert queue.claim(1) == []
        clock.advance(1)
        assert len(queue.claim(1)) == 1

    def test_second_failure_waits_longer(self, queue, clock):
        queue.enqueue(CUSIP)
        for _ in range(2):
            queue.claim(1)
            queue.fail(CUSIP, "nothing found")
            clock.advance(30)
        assert queue.claim(1) == []
        clock.advance(30)
        assert len(queue.claim(1)) == 1

    def test_stale_processing_is_reclaimed(self, queue, clock):
        queue.enqueue(CUSIP)
        queue.claim(1)
        clock.advance(299)
        assert queue.claim(1) == []
        clock.advance(1)
        assert len(queue.claim(1)) == 1


class TestLifecycle:
    def test_complete(self, queue):
        queue.enqueue(CUSIP)
        queue.claim(1)
        item = queue.complete(CUSIP, "AAPL", "provider")
        assert item.status == COMPLETED
        assert item.ticker == "AAPL"
        assert queue.claim(1) == []

    def test_fail_unknown_identifier(self, queue):
        assert queue.fail("999999999", "x") is None
        assert queue.complete("999999999", "X") is None

    def test_exhaustion_and_revival(self, queue, clock):
        queue.enqueue(CUSIP, priority=1)
        for _ in range(5):
            clock.advance(3600)
            assert len(queue.claim(1)) == 1
            item = queue.fail(CUSIP, "no match")
        assert item.status == FAILED
        assert item.attempts == 5

        clock.advance(3600)
        assert queue.claim(1) == []

        # same priority does not revive
        queue.enqueue(CUSIP, priority=1)
        assert queue.get(CUSIP).status == FAILED

        revived = queue.enqueue(CUSIP, priority=2)
        assert revived.status == PENDING
        assert revived.attempts == 0
        assert revived.priority == 2
        assert len(queue.claim(1)) == 1

    def test_stats(self, queue):
        queue.enqueue("A00000000")
        queue.enqueue("B00000000")
        queue.claim(1)
        stats = queue.stats()
        assert stats[PENDING] == 1
        assert stats[PROCESSING] == 1
        assert stats["total"] == 2

    def test_cleanup_removes_old_finished_items(self, queue, clock):
        queue.enqueue("A00000000")
        queue.enqueue("B00000000")
        queue.claim(1)
        queue.complete("A00000000", "AAA")
        clock.advance(8 * 86400)
        assert queue.cleanup() == 1
        assert queue.get("A00000000") is None
        assert queue.get("B00000000") is not None


class TestRowMapping:
    def test_round_trip(self, clock):
        item = ResolutionQueueItem(
            identifier=CUSIP, priority=3, status=PROCESSING, attempts=2,
            last_attempt_at=clock.now, user_ids=["u1"], created_at=clock.now, updated_at=clock.now,
        )
        restored = ResolutionQueueItem.from_row(item.to_row())
        assert restored == item

    def test_from_row_accepts_z_suffix(self):
        item = ResolutionQueueItem.from_row({
            "cusip": CUSIP, "status": "pending", "last_attempt_at": "2024-03-04T12:00:00Z",
        })
        assert item.last_attempt_at.tzinfo is not None


class TestSupabaseQueueStore:
    def _client(self, rows=None, update_data=None):
        client = MagicMock()
        chain = client.table.return_value
        for method in ("select", "eq", "is_", "in_", "order", "limit", "update", "insert", "delete", "lt"):
            getattr(chain, method).return_value = chain
        chain.execute.return_value = MagicMock(data=rows or [])
        return client, chain

    def test_claim_uses_conditional_update(self, clock):
        row = ResolutionQueueItem(identifier=CUSIP, created_at=clock.now, updated_at=clock.now).to_row()
        client, chain = self._client(rows=[row])
        store = SupabaseQueueStore(client, clock=clock)

        claimed = store.claim(1)

        assert [i.identifier for i in claimed] == [CUSIP]
        chain.eq.assert_any_call("status", PENDING)
        chain.is_.assert_any_call("last_attempt_at", "null")

    def test_lost_claim_race(self, clock):
        row = ResolutionQueueItem(identifier=CUSIP, created_at=clock.now, updated_at=clock.now).to_row()
        client, chain = self._client(rows=[row])
        # candidate read returns the row, the conditional update matches nothing
        chain.execute.side_effect = [MagicMock(data=[row]), MagicMock(data=[])]
        store = SupabaseQueueStore(client, clock=clock)
        assert store.claim(1) == []

    def test_insert_conflict_merges(self, clock):
        existing = ResolutionQueueItem(
            identifier=CUSIP, priority=1, user_ids=["u1"], created_at=clock.now, updated_at=clock.now,
        ).to_row()
        client, chain = self._client()
        chain.execute.side_effect = [
            MagicMock(data=[]),            # load: not there yet
            Exception("duplicate key"),    # insert loses the race
            MagicMock(data=[existing]),    # reload
            MagicMock(data=[existing]),    # save
        ]
        store = SupabaseQueueStore(client, clock=clock)
        item = store.enqueue(CUSIP, priority=4, user_id="u2")
        assert item.priority == 4
        assert item.user_ids == ["u1", "u2"]

    def test_merge_is_conditional_and_retried(self, clock):
        existing = ResolutionQueueItem(
            identifier=CUSIP, priority=1, user_ids=["u1"], created_at=clock.now, updated_at=clock.now,
        ).to_row()
        client, chain = self._client()
        chain.execute.side_effect = [
            MagicMock(data=[existing]),    # load
            MagicMock(data=[]),            # row changed underneath, no match
            MagicMock(data=[existing]),    # reload
            MagicMock(data=[existing]),    # save
        ]
        store = SupabaseQueueStore(client, clock=clock)
        item = store.enqueue(CUSIP, user_id="u2")
        assert item.user_ids == ["u1", "u2"]
        assert chain.execute.call_count == 4
        chain.eq.assert_any_call("status", PENDING)
        chain.is_.assert_any_call("last_attempt_at", "null")

    def test_merge_gives_up_under_contention(self, clock):
        existing = ResolutionQueueItem(identifier=CUSIP, created_at=clock.now, updated_at=clock.now).to_row()
        client, chain = self._client()
        chain.execute.side_effect = [MagicMock(data=[existing]), MagicMock(data=[])] * 5
        store = SupabaseQueueStore(client, clock=clock)
        with pytest.raises(RuntimeError):
            store.enqueue(CUSIP, user_id="u2")
