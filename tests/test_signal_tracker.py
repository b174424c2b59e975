"""Tests for active signal tracking."""

from perptrader.models import Signal, LONG
from perptrader.signal_tracker import ActiveSignalTracker


def make_signal(**overrides) -> Signal:
    fields = dict(signal_id="sig-1", ticker="DOGE", inst_id="DOGE-USDT", side=LONG, entry_price=0.5)
    fields.update(overrides)
    return Signal(**fields)


class TestActiveSignalTracker:
    def test_track_starts_at_version_one(self):
        tracker = ActiveSignalTracker()
        record = tracker.track("m-1", make_signal(), channel_id="c-1")

        assert record.version == 1
        assert "m-1" in tracker
        assert len(tracker) == 1

    def test_apply_edit_bumps_version_and_stores_parse(self):
        tracker = ActiveSignalTracker()
        tracker.track("m-1", make_signal())
        updated = make_signal(is_closed=True)

        record = tracker.apply_edit("m-1", updated)

        assert record.version == 2
        assert record.signal is updated
        assert tracker.apply_edit("m-1", updated).version == 3

    def test_untracked_edit_returns_none(self):
        assert ActiveSignalTracker().apply_edit("m-404", make_signal()) is None

    def test_remove(self):
        tracker = ActiveSignalTracker()
        tracker.track("m-1", make_signal())

        assert tracker.remove("m-1").message_id == "m-1"
        assert "m-1" not in tracker
        assert tracker.remove("m-1") is None

    def test_attach_order_once(self):
        tracker = ActiveSignalTracker()
        tracker.track("m-1", make_signal())

        tracker.attach_order("m-1", "ord-1")
        tracker.attach_order("m-1", "ord-1")
        tracker.attach_order("m-404", "ord-2")

        assert tracker.get("m-1").order_ids == ["ord-1"]

    def test_snapshot(self):
        tracker = ActiveSignalTracker()
        tracker.track("m-1", make_signal())

        snapshot = tracker.snapshot()

        assert snapshot[0]["message_id"] == "m-1"
        assert snapshot[0]["signal"]["inst_id"] == "DOGE-USDT"
        assert snapshot[0]["version"] == 1
