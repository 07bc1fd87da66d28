"""Tests for event processor module."""

import pytest
from pathlib import Path

from src.watcher.config import WatcherConfig
from src.watcher.models import (
    ContentSnapshot,
    RawEvent,
    RawEventKind,
    RescanRequest,
    SettledChange,
    SettledRename,
)
from src.watcher.event_processor import (
    EventDebouncer,
    EventProcessor,
    RenameCorrelator,
)


class TestRenameCorrelator:
    """Tests for RenameCorrelator class."""

    def test_on_delete_holds(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        assert correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0) is True
        assert correlator.pending_count() == 1

    def test_on_delete_disabled(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=0)
        assert correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0) is False
        assert correlator.pending_count() == 0

    def test_on_create_matches_hash(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0)

        assert correlator.on_create("blake3:aa", 10.2) == tmp_path / "a.txt"
        assert correlator.pending_count() == 0

    def test_on_create_different_hash(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0)

        assert correlator.on_create("blake3:bb", 10.2) is None
        assert correlator.pending_count() == 1

    def test_on_create_after_window(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0)

        assert correlator.on_create("blake3:aa", 10.6) is None

    def test_first_seen_wins(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "first.txt", "blake3:aa", 10.0)
        correlator.on_delete(tmp_path / "second.txt", "blake3:aa", 10.1)

        assert correlator.on_create("blake3:aa", 10.2) == tmp_path / "first.txt"
        assert correlator.on_create("blake3:aa", 10.3) == tmp_path / "second.txt"

    def test_flush_expired_partial(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "old.txt", "blake3:aa", 10.0)
        correlator.on_delete(tmp_path / "new.txt", "blake3:bb", 10.4)

        assert correlator.flush_expired(10.6) == [tmp_path / "old.txt"]
        assert correlator.pending_count() == 1

    def test_cancel(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0)

        assert correlator.cancel(tmp_path / "a.txt") is True
        assert correlator.cancel(tmp_path / "a.txt") is False

    def test_discard_under(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "sub" / "a.txt", "blake3:aa", 10.0)
        correlator.on_delete(tmp_path / "b.txt", "blake3:bb", 10.0)

        assert correlator.discard_under(tmp_path / "sub") == 1
        assert correlator.pending_count() == 1

    def test_clear(self, tmp_path):
        correlator = RenameCorrelator(correlation_window_ms=500)
        correlator.on_delete(tmp_path / "a.txt", "blake3:aa", 10.0)

        assert correlator.clear() == 1
        assert correlator.flush_expired(100.0) == []


class TestEventDebouncer:
    """Tests for EventDebouncer class."""

    def test_not_settled_before_deadline(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        debouncer.add(tmp_path / "f", RawEventKind.MODIFY, 10.0)

        assert debouncer.flush(10.2) == []
        assert debouncer.pending_count() == 1

    def test_settles_at_deadline(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        debouncer.add(tmp_path / "f", RawEventKind.MODIFY, 10.0)

        ready = debouncer.flush(10.25)

        assert ready == [SettledChange(path=tmp_path / "f", kind_hint=RawEventKind.MODIFY)]
        assert debouncer.pending_count() == 0

    def test_burst_coalesces_to_one(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        path = tmp_path / "f"
        for i in range(20):
            debouncer.add(path, RawEventKind.MODIFY, 10.0 + i * 0.1)

        # Last event at 11.9, so the change settles at 12.15
        assert debouncer.flush(12.1) == []
        ready = debouncer.flush(12.16)
        assert len(ready) == 1
        assert debouncer.flush(100.0) == []

    def test_delete_wins_over_modify(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        path = tmp_path / "f"
        debouncer.add(path, RawEventKind.MODIFY, 10.0)
        debouncer.add(path, RawEventKind.DELETE, 10.1)
        debouncer.add(path, RawEventKind.MODIFY, 10.2)

        ready = debouncer.flush(11.0)
        assert ready[0].kind_hint == RawEventKind.DELETE

    def test_create_wins_over_modify(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        path = tmp_path / "f"
        debouncer.add(path, RawEventKind.CREATE, 10.0)
        debouncer.add(path, RawEventKind.MODIFY, 10.1)

        assert debouncer.flush(11.0)[0].kind_hint == RawEventKind.CREATE

    def test_independent_paths(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        debouncer.add(tmp_path / "a", RawEventKind.MODIFY, 10.0)
        debouncer.add(tmp_path / "b", RawEventKind.MODIFY, 10.2)

        ready = debouncer.flush(10.3)
        assert [c.path for c in ready] == [tmp_path / "a"]
        ready = debouncer.flush(10.5)
        assert [c.path for c in ready] == [tmp_path / "b"]

    def test_deadline_order(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=100)
        debouncer.add(tmp_path / "late", RawEventKind.MODIFY, 10.05)
        debouncer.add(tmp_path / "early", RawEventKind.MODIFY, 10.0)

        ready = debouncer.flush(11.0)
        assert [c.path for c in ready] == [tmp_path / "early", tmp_path / "late"]

    def test_zero_debounce_settles_immediately(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=0)

        settled = debouncer.add(tmp_path / "f", RawEventKind.MODIFY, 10.0)

        assert settled == SettledChange(path=tmp_path / "f", kind_hint=RawEventKind.MODIFY)
        assert debouncer.pending_count() == 0

    def test_next_deadline_skips_stale_entries(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        path = tmp_path / "f"
        debouncer.add(path, RawEventKind.MODIFY, 10.0)
        debouncer.add(path, RawEventKind.MODIFY, 10.2)

        assert debouncer.next_deadline() == pytest.approx(10.45)

    def test_next_deadline_empty(self):
        assert EventDebouncer().next_deadline() is None

    def test_discard(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        debouncer.add(tmp_path / "f", RawEventKind.MODIFY, 10.0)

        assert debouncer.discard(tmp_path / "f") is True
        assert debouncer.flush(11.0) == []

    def test_discard_under(self, tmp_path):
        debouncer = EventDebouncer(debounce_ms=250)
        debouncer.add(tmp_path / "sub" / "a", RawEventKind.MODIFY, 10.0)
        debouncer.add(tmp_path / "sub" / "deep" / "b", RawEventKind.MODIFY, 10.0)
        debouncer.add(tmp_path / "other", RawEventKind.MODIFY, 10.0)

        assert debouncer.discard_under(tmp_path / "sub") == 2
        assert [c.path for c in debouncer.flush(11.0)] == [tmp_path / "other"]


def _snapshot_of(hashes):
    """Snapshot callback returning fixed hashes per path."""
    def snapshot(path):
        content_hash = hashes.get(path)
        if content_hash is None:
            return None
        return ContentSnapshot(content_hash=content_hash, size=3, mtime=0, mtime_ns=0)
    return snapshot


class TestEventProcessor:
    """Tests for EventProcessor class."""

    def _processor(self, baseline=None, hashes=None, **config):
        config.setdefault("debounce_ms", 250)
        config.setdefault("rename_correlation_ms", 500)
        baseline = baseline or {}
        return EventProcessor(
            WatcherConfig(**config),
            lookup_hash=baseline.get,
            snapshot=_snapshot_of(hashes or {}),
        )

    def test_modify_settles(self, tmp_path):
        processor = self._processor()
        path = tmp_path / "f.txt"
        processor.process(RawEvent(path, RawEventKind.MODIFY, observed_at=10.0))

        assert processor.flush(10.1) == []
        assert processor.flush(10.3) == [SettledChange(path, RawEventKind.MODIFY)]

    def test_excluded_path_dropped(self, tmp_path):
        processor = self._processor()
        processor.process(RawEvent(tmp_path / "f.swp", RawEventKind.MODIFY, observed_at=10.0))

        assert processor.pending_count() == 0
        assert processor.flush(11.0) == []

    def test_unwatched_path_dropped(self, tmp_path):
        processor = EventProcessor(WatcherConfig(), is_watched=lambda p: False)
        processor.process(RawEvent(tmp_path / "f.txt", RawEventKind.MODIFY, observed_at=10.0))

        assert processor.pending_count() == 0

    def test_directory_modify_ignored(self, tmp_path):
        processor = self._processor()
        processor.process(RawEvent(tmp_path, RawEventKind.MODIFY, observed_at=10.0, is_directory=True))

        assert processor.flush(11.0) == []

    def test_directory_delete_requests_rescan(self, tmp_path):
        processor = self._processor()
        sub = tmp_path / "sub"
        processor.process(RawEvent(sub / "a", RawEventKind.MODIFY, observed_at=10.0))
        processor.process(RawEvent(sub, RawEventKind.DELETE, observed_at=10.1, is_directory=True))

        items = processor.flush(11.0)
        assert items == [RescanRequest(scope=sub, reason="directory delete")]

    def test_overflow_requests_rescan(self, tmp_path):
        processor = self._processor()
        processor.process(RawEvent(tmp_path / "a", RawEventKind.MODIFY, observed_at=10.0))
        processor.process(RawEvent(tmp_path, RawEventKind.OVERFLOW, observed_at=10.1))

        items = processor.flush(11.0)
        assert items == [RescanRequest(scope=tmp_path, reason="overflow")]

    def test_native_move_bypasses_correlator(self, tmp_path):
        processor = self._processor()
        src = tmp_path / "a.txt"
        dest = tmp_path / "b.txt"
        processor.process(RawEvent(src, RawEventKind.MODIFY, observed_at=10.0))
        processor.process(RawEvent(src, RawEventKind.MOVE, observed_at=10.1, dest_path=dest))

        items = processor.flush(10.1)
        assert items == [SettledRename(from_path=src, to_path=dest)]
        assert processor.flush(11.0) == []

    def test_move_to_excluded_becomes_delete(self, tmp_path):
        processor = self._processor(rename_correlation_ms=0)
        src = tmp_path / "a.txt"
        processor.process(RawEvent(src, RawEventKind.MOVE, observed_at=10.0, dest_path=tmp_path / "a.txt.tmp"))

        assert processor.flush(11.0) == [SettledChange(src, RawEventKind.DELETE)]

    def test_move_from_excluded_becomes_create(self, tmp_path):
        processor = self._processor()
        dest = tmp_path / "a.txt"
        processor.process(RawEvent(tmp_path / "a.txt.tmp", RawEventKind.MOVE, observed_at=10.0, dest_path=dest))

        assert processor.flush(11.0) == [SettledChange(dest, RawEventKind.CREATE)]

    def test_directory_move_rescans_both(self, tmp_path):
        processor = self._processor()
        src = tmp_path / "d1"
        dest = tmp_path / "d2"
        processor.process(RawEvent(src, RawEventKind.MOVE, observed_at=10.0, dest_path=dest, is_directory=True))

        items = processor.flush(10.0)
        assert {item.scope for item in items} == {src, dest}

    def test_untracked_delete_not_held(self, tmp_path):
        processor = self._processor()
        path = tmp_path / "gone.txt"
        processor.process(RawEvent(path, RawEventKind.DELETE, observed_at=10.0))

        assert processor.flush(10.3) == [SettledChange(path, RawEventKind.DELETE)]

    def test_tracked_delete_held_then_expires(self, tmp_path):
        path = tmp_path / "gone.txt"
        processor = self._processor(baseline={path: "blake3:aa"})
        processor.process(RawEvent(path, RawEventKind.DELETE, observed_at=10.0))

        assert processor.flush(10.25) == []
        assert processor.correlator.pending_count() == 1
        assert processor.flush(10.7) == []
        assert processor.flush(10.75) == [SettledChange(path, RawEventKind.DELETE)]

    def test_delete_of_existing_file_not_held(self, tmp_path):
        path = tmp_path / "still-here.txt"
        path.write_text("x")
        processor = self._processor(baseline={path: "blake3:aa"})
        processor.process(RawEvent(path, RawEventKind.DELETE, observed_at=10.0))

        assert processor.flush(10.3) == [SettledChange(path, RawEventKind.DELETE)]

    def test_zero_window_never_holds(self, tmp_path):
        path = tmp_path / "gone.txt"
        processor = self._processor(baseline={path: "blake3:aa"}, rename_correlation_ms=0)
        processor.process(RawEvent(path, RawEventKind.DELETE, observed_at=10.0))

        assert processor.flush(10.3) == [SettledChange(path, RawEventKind.DELETE)]

    def test_recreated_path_cancels_candidate(self, tmp_path):
        path = tmp_path / "a.txt"
        processor = self._processor(baseline={path: "blake3:aa"})
        processor.process(RawEvent(path, RawEventKind.DELETE, observed_at=10.0))
        processor.flush(10.25)
        processor.process(RawEvent(path, RawEventKind.CREATE, observed_at=10.3))

        assert processor.flush(10.6) == [SettledChange(path, RawEventKind.CREATE)]
        assert processor.correlator.pending_count() == 0

    def test_correlate_delete_create_into_rename(self, tmp_path):
        old = tmp_path / "a.txt"
        new = tmp_path / "b.txt"
        processor = self._processor(baseline={old: "blake3:aa"}, hashes={new: "blake3:aa"})
        processor.process(RawEvent(old, RawEventKind.DELETE, observed_at=10.0))
        processor.process(RawEvent(new, RawEventKind.CREATE, observed_at=10.05))

        items = processor.flush(10.35)
        assert items == [SettledChange(new, RawEventKind.CREATE)]

        result = processor.correlate(items[0], 10.35)
        assert isinstance(result, SettledRename)
        assert result.from_path == old
        assert result.to_path == new
        assert result.snapshot.content_hash == "blake3:aa"
        assert processor.flush(20.0) == []

    def test_correlate_no_match_carries_snapshot(self, tmp_path):
        old = tmp_path / "a.txt"
        new = tmp_path / "b.txt"
        processor = self._processor(baseline={old: "blake3:aa"}, hashes={new: "blake3:bb"})
        processor.process(RawEvent(old, RawEventKind.DELETE, observed_at=10.0))
        processor.process(RawEvent(new, RawEventKind.CREATE, observed_at=10.0))

        change = processor.flush(10.3)[0]
        result = processor.correlate(change, 10.3)

        assert isinstance(result, SettledChange)
        assert result.snapshot.content_hash == "blake3:bb"
        assert processor.flush(10.9) == [SettledChange(old, RawEventKind.DELETE)]

    def test_correlate_after_window(self, tmp_path):
        old = tmp_path / "a.txt"
        new = tmp_path / "b.txt"
        processor = self._processor(baseline={old: "blake3:aa"}, hashes={new: "blake3:aa"})
        processor.process(RawEvent(old, RawEventKind.DELETE, observed_at=10.0))

        assert processor.flush(10.25) == []
        assert processor.flush(10.8) == [SettledChange(old, RawEventKind.DELETE)]

        processor.process(RawEvent(new, RawEventKind.CREATE, observed_at=11.0))
        change = processor.flush(11.3)[0]
        assert isinstance(processor.correlate(change, 11.3), SettledChange)

    def test_correlate_skips_without_candidates(self, tmp_path):
        calls = []

        def snapshot(path):
            calls.append(path)
            return None

        processor = EventProcessor(WatcherConfig(), snapshot=snapshot)
        change = SettledChange(tmp_path / "f", RawEventKind.CREATE)

        assert processor.correlate(change, 10.0) is change
        assert calls == []

    def test_correlate_ignores_modify(self, tmp_path):
        processor = self._processor()
        change = SettledChange(tmp_path / "f", RawEventKind.MODIFY)
        assert processor.correlate(change, 10.0) is change

    def test_zero_debounce(self, tmp_path):
        processor = self._processor(debounce_ms=0)
        path = tmp_path / "f.txt"
        processor.process(RawEvent(path, RawEventKind.MODIFY, observed_at=10.0))

        assert processor.flush(10.0) == [SettledChange(path, RawEventKind.MODIFY)]

    def test_zero_debounce_delete_held_for_rename(self, tmp_path):
        old = tmp_path / "a.txt"
        new = tmp_path / "b.txt"
        processor = self._processor(
            baseline={old: "blake3:aa"},
            hashes={new: "blake3:aa"},
            debounce_ms=0,
        )
        processor.process(RawEvent(old, RawEventKind.DELETE, observed_at=10.0))
        processor.process(RawEvent(new, RawEventKind.CREATE, observed_at=10.01))

        items = processor.flush(10.02)

        assert items == [SettledChange(new, RawEventKind.CREATE)]
        assert processor.correlator.pending_count() == 1
        renamed = processor.correlate(items[0], 10.02)
        assert isinstance(renamed, SettledRename)
        assert (renamed.from_path, renamed.to_path) == (old, new)
        assert processor.flush(20.0) == []

    def test_zero_debounce_rescan_drops_settled_changes(self, tmp_path):
        processor = self._processor(debounce_ms=0)
        processor.process(RawEvent(tmp_path / "sub" / "a", RawEventKind.MODIFY, observed_at=10.0))
        processor.process(RawEvent(tmp_path / "sub", RawEventKind.OVERFLOW, observed_at=10.0))

        assert processor.flush(10.0) == [RescanRequest(scope=tmp_path / "sub", reason="overflow")]

    def test_flush_all_drops_unsettled(self, tmp_path):
        path = tmp_path / "gone.txt"
        processor = self._processor(baseline={path: "blake3:aa"})
        processor.process(RawEvent(tmp_path / "pending.txt", RawEventKind.MODIFY, observed_at=10.0))
        processor.process(RawEvent(path, RawEventKind.DELETE, observed_at=9.0))
        processor.flush(9.3)
        processor.process(RawEvent(tmp_path / "a", RawEventKind.MOVE, observed_at=10.0, dest_path=tmp_path / "b"))

        items = processor.flush_all()

        assert items == [SettledRename(from_path=tmp_path / "a", to_path=tmp_path / "b")]
        assert processor.pending_count() == 0
