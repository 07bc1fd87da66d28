"""Tests for metrics module."""

import urllib.request
import pytest

from src.integrity.metrics import COUNTERS, IntegrityMetrics


class TestIntegrityMetrics:
    """Tests for IntegrityMetrics."""

    def test_counters_start_at_zero(self):
        metrics = IntegrityMetrics()
        for name in COUNTERS:
            assert metrics.value(name) == 0.0
        assert metrics.value("tracked_files") == 0.0

    def test_increment(self):
        metrics = IntegrityMetrics()
        metrics.increment("events_create_total")
        metrics.increment("events_create_total", 2)

        assert metrics.value("events_create_total") == 3.0

    def test_gauge_set_and_adjust(self):
        metrics = IntegrityMetrics()
        metrics.set("tracked_files", 10)
        metrics.adjust("tracked_files", -1)
        metrics.adjust("tracked_files", 3)

        assert metrics.value("tracked_files") == 12.0

    def test_instances_are_independent(self):
        first = IntegrityMetrics()
        second = IntegrityMetrics()
        first.increment("events_delete_total")

        assert second.value("events_delete_total") == 0.0

    def test_unknown_metric(self):
        with pytest.raises(KeyError):
            IntegrityMetrics().value("events_bogus_total")

    def test_render(self):
        metrics = IntegrityMetrics()
        metrics.increment("events_rename_total")

        text = metrics.render().decode()

        assert "events_rename_total 1.0" in text
        assert "tracked_files 0.0" in text

    def test_serve(self):
        metrics = IntegrityMetrics()
        metrics.increment("events_modify_total")
        host, port = metrics.serve(("127.0.0.1", 0))
        try:
            with urllib.request.urlopen(f"http://{host}:{port}/metrics", timeout=5) as resp:
                body = resp.read().decode()
            with urllib.request.urlopen(f"http://{host}:{port}/healthz", timeout=5) as resp:
                health = resp.read().decode()
        finally:
            metrics.shutdown()

        assert "events_modify_total 1.0" in body
        assert health == "ok"
