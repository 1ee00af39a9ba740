import unittest
from unittest.mock import MagicMock, patch

from agentlog.observability import otel


class OtlpEndpointTests(unittest.TestCase):
    def test_signal_path_is_appended_once(self) -> None:
        self.assertEqual(otel._normalize_otlp_endpoint("", "/v1/traces"), "")
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318", "/v1/traces"), "http://collector:4318/v1/traces"
        )
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/v1/", "/v1/metrics"),
            "http://collector:4318/v1/metrics",
        )
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/v1/traces", "/v1/traces"),
            "http://collector:4318/v1/traces",
        )


class TelemetryStateTests(unittest.TestCase):
    def test_helpers_are_no_ops_when_disabled(self) -> None:
        with patch.object(otel, "_state", otel._Telemetry()):
            with otel.start_span("agentlog.ingest", {"agentlog.source": "codex"}) as span:
                self.assertIsNone(span)
            otel.record_ingestion("codex", "ok", 12.5, imported=3)
            otel.record_parser_failure("codex", 2)
            otel.record_tool_result("bash", "success", source="codex", duration_ms=40)
            otel.record_token_cost(source="codex", model=None, token_input=10, token_output=2, cost_usd=None)

    def test_instruments_receive_declared_labels(self) -> None:
        tokens = MagicMock()
        latency = MagicMock()
        prom_runs = MagicMock()
        state = otel._Telemetry(
            otel={"agentlog_tokens_total": tokens, "agentlog_ingest_latency_ms": latency},
            prom={"agentlog_ingest_runs_total": prom_runs},
        )
        with patch.object(otel, "_state", state):
            otel.record_token_cost(source="codex", model=" ", token_input=10, token_output=0, cost_usd=0.5)
            otel.record_ingestion("crush", "degraded", -5)

        tokens.add.assert_called_once_with(10, {"model": "unknown", "direction": "input", "source": "codex"})
        latency.record.assert_called_once_with(0.0, {"source": "crush", "result": "degraded"})
        prom_runs.labels.assert_called_once_with(source="crush", result="degraded")
        prom_runs.labels.return_value.inc.assert_called_once_with(1)


if __name__ == "__main__":
    unittest.main()
