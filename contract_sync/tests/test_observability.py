import unittest
from unittest.mock import MagicMock, patch

from contract_sync.observability import otel


class ObservabilityTests(unittest.TestCase):
    def test_recorders_are_noops_when_uninitialized(self) -> None:
        otel.record_job_outcome("completed", 3)
        otel.record_sync_cycle("ok", 1, 2, 12.5)
        otel.record_storage_fallback("set")
        otel.record_upload_result("retry")
        with otel.start_span("contract_sync.test") as span:
            self.assertIsNone(span)

    def test_otlp_endpoint_normalization(self) -> None:
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318", "/v1/traces"),
            "http://collector:4318/v1/traces",
        )
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/v1/", "/v1/metrics"),
            "http://collector:4318/v1/metrics",
        )
        self.assertEqual(otel._normalize_otlp_endpoint("  ", "/v1/traces"), "")

    def test_sync_cycle_fans_out_to_prometheus_instruments(self) -> None:
        instruments = {name: MagicMock() for name in otel._METRICS}
        with patch.dict(otel._prom_instruments, instruments, clear=True):
            otel.record_sync_cycle("", pulled=2, pushed=0, duration_ms=-5)

        instruments["contract_sync_sync_cycles_total"].labels.assert_called_with(result="unknown")
        instruments["contract_sync_sync_cycles_total"].labels.return_value.inc.assert_called_once_with(1)
        instruments["contract_sync_sync_latency_ms"].labels.return_value.observe.assert_called_once_with(0.0)
        instruments["contract_sync_sync_items_total"].labels.assert_called_once_with(direction="pull")
        instruments["contract_sync_sync_items_total"].labels.return_value.inc.assert_called_once_with(2)


if __name__ == "__main__":
    unittest.main()
