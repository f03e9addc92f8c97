"""
Tests for the in-process metrics registry.
"""
import pytest

from src.shared.metrics_collector import Counter, Gauge, Histogram, get_metrics_collector


class TestMetricTypes:
    """Test counters, gauges and histograms."""

    def test_counter_labels(self):
        counter = Counter("cache_lookups_total")
        counter.increment(resource="products", outcome="hit")
        counter.increment(2, resource="products", outcome="miss")

        assert counter.get_value(resource="products", outcome="hit") == 1
        assert counter.get_value(resource="products", outcome="miss") == 2
        assert counter.get_value() == 3

    def test_counter_rejects_decrease(self):
        with pytest.raises(ValueError):
            Counter("c").increment(-1)

    def test_gauge(self):
        gauge = Gauge("pending_writes")
        gauge.set(5)
        gauge.decrement(2)

        assert gauge.get_value() == 3

    def test_histogram_timer(self):
        histogram = Histogram("op_seconds", buckets=[0.5, float("inf")])

        with histogram.time() as timer:
            pass

        stats = histogram.get_statistics()
        assert stats["count"] == 1
        assert stats["buckets"][0.5] == 1
        assert timer.duration is not None


class TestMetricsCollector:
    """Test the process-wide registry."""

    def test_singleton(self):
        assert get_metrics_collector() is get_metrics_collector()

    def test_cache_lookup_outcomes(self):
        collector = get_metrics_collector()
        collector.record_cache_lookup("products", "hit")
        collector.record_cache_lookup("products", "miss")

        counter = collector.get_counter("cache_lookups_total")
        assert counter.get_value(resource="products", outcome="hit") == 1

        summary = collector.get_metrics_summary()
        assert 'cache_lookups_total{outcome="hit",resource="products"}' in summary["counters"]["cache_lookups_total"]

    def test_prometheus_export(self):
        collector = get_metrics_collector()
        collector.record_request("GET", "/products", 200, 0.02)

        text = collector.export_prometheus()

        assert "# TYPE http_requests_total counter" in text
        assert 'http_requests_total{endpoint="/products",method="GET",status="200"} 1' in text
        assert 'http_request_duration_seconds_bucket{le="+Inf"} 1' in text
        assert "http_request_duration_seconds_count 1" in text

    def test_reset(self):
        collector = get_metrics_collector()
        collector.record_cache_lookup("products", "hit")
        collector.reset()

        assert collector.get_counter("cache_lookups_total").get_value() == 0
