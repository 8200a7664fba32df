from datetime import datetime, timezone

from planboard.events import ChangeEvent, EventKind
from planboard.suppression import ExpiringSet, SuppressionFilter


T0 = datetime(2026, 10, 19, 9, 30, 5, tzinfo=timezone.utc)


def order_event(payload, entity_id="O1", emitted_at=T0, event_id=None):
    event = ChangeEvent.create(EventKind.ORDER_UPDATED, entity_id, payload, emitted_at=emitted_at)
    if event_id:
        event = ChangeEvent(kind=event.kind, entity_id=event.entity_id, payload=event.payload,
                            emitted_at=event.emitted_at, id=event_id)
    return event


class TestExpiringSet:
    def test_membership_expires(self, clock):
        s = ExpiringSet(10, clock)
        s.add("a")
        assert "a" in s
        clock.advance(9.9)
        assert "a" in s
        clock.advance(0.2)
        assert "a" not in s

    def test_sweep_removes_only_expired(self, clock):
        s = ExpiringSet(10, clock)
        s.add("a")
        clock.advance(5)
        s.add("b")
        clock.advance(6)
        assert s.sweep() == 1
        assert len(s) == 1
        assert "b" in s

    def test_readded_key_survives_its_old_expiry(self, clock):
        s = ExpiringSet(10, clock)
        s.add("a")
        clock.advance(8)
        s.add("a")
        clock.advance(5)
        assert s.sweep() == 0
        assert "a" in s
        clock.advance(6)
        assert s.sweep() == 1
        assert len(s) == 0


class TestSuppressionFilter:
    def test_same_event_accepted_once(self, clock):
        f = SuppressionFilter(ttl=60, clock=clock)
        event = order_event({"material": "Pine"})
        assert f.should_process(event) is True
        assert f.should_process(event) is False
        assert f.stats["dropped"] == 1

    def test_cross_path_dedup(self, clock):
        # direct response and broadcast carry different envelopes
        f = SuppressionFilter(ttl=60, clock=clock)
        direct = order_event({"material": "Pine"}, event_id="from-response")
        broadcast = order_event({"material": "Pine"}, event_id="from-channel")
        accepted = [f.should_process(direct), f.should_process(broadcast)]
        assert accepted.count(True) == 1

    def test_distinct_updates_pass(self, clock):
        f = SuppressionFilter(ttl=60, clock=clock)
        assert f.should_process(order_event({"material": "Pine"}))
        assert f.should_process(order_event({"material": "Birch"}))
        assert f.should_process(order_event({"material": "Pine"}, entity_id="O2"))

    def test_same_bucket_collision_is_dropped(self, clock):
        f = SuppressionFilter(ttl=60, bucket_seconds=60, clock=clock)
        assert f.should_process(order_event({"material": "Pine"}))
        assert not f.should_process(order_event({"material": "Pine"},
                                                emitted_at=T0.replace(second=40)))

    def test_entries_expire_after_ttl(self, clock):
        f = SuppressionFilter(ttl=30, clock=clock)
        event = order_event({"material": "Pine"})
        assert f.should_process(event)
        clock.advance(31)
        assert f.sweep() == 2
        assert f.should_process(event)

    def test_clear(self, clock):
        f = SuppressionFilter(clock=clock)
        f.should_process(order_event({"a": 1}))
        f.clear()
        assert f.stats["tracked_ids"] == 0
        assert f.stats["tracked_fingerprints"] == 0
