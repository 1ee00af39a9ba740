import unittest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from agentlog import model_pricing
from agentlog.date_utils import format_datetime_utc, parse_since, parse_timestamp
from agentlog.models import EventDraft, EventKind, ExportFormat, Role, SessionDraft, Source, coerce_role, event_fingerprint


def _draft(**overrides) -> EventDraft:
    payload = {
        "kind": EventKind.MESSAGE,
        "role": Role.USER,
        "content": "hello",
        "timestamp": datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc),
        "position": "line:1",
        "rawPayload": {"type": "user"},
    }
    payload.update(overrides)
    return EventDraft(**payload)


class TimestampTests(unittest.TestCase):
    def test_parse_timestamp_accepts_iso_and_epochs(self) -> None:
        expected = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
        self.assertEqual(parse_timestamp("2026-01-05T10:00:00Z"), expected)
        self.assertEqual(parse_timestamp(int(expected.timestamp())), expected)
        self.assertEqual(parse_timestamp(int(expected.timestamp() * 1000)), expected)
        self.assertEqual(parse_timestamp(str(int(expected.timestamp() * 1000))), expected)

    def test_parse_timestamp_rejects_garbage(self) -> None:
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(""))
        self.assertIsNone(parse_timestamp("yesterday-ish"))
        self.assertIsNone(parse_timestamp(True))
        self.assertIsNone(parse_timestamp(0))

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        parsed = parse_timestamp("2026-01-05T10:00:00")
        self.assertEqual(parsed.tzinfo, timezone.utc)

    def test_parse_since_relative_window(self) -> None:
        now = datetime(2026, 1, 10, tzinfo=timezone.utc)
        self.assertEqual(parse_since("7d", now=now), now - timedelta(days=7))
        self.assertEqual(parse_since("24h", now=now), now - timedelta(hours=24))
        self.assertEqual(parse_since("2026-01-01", now=now), datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.assertIsNone(parse_since(""))

    def test_format_datetime_utc_uses_z_suffix(self) -> None:
        value = datetime(2026, 1, 5, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(format_datetime_utc(value), "2026-01-05T10:00:00.000Z")


class ModelTests(unittest.TestCase):
    def test_session_draft_requires_external_id(self) -> None:
        with self.assertRaises(ValidationError):
            SessionDraft(source=Source.CODEX, externalId="   ")

    def test_fingerprint_prefers_native_id(self) -> None:
        first = event_fingerprint(Source.CLAUDE_CODE, "s1", _draft(nativeId="u-1", content="a"))
        second = event_fingerprint(Source.CLAUDE_CODE, "s1", _draft(nativeId="u-1", content="b", position="line:9"))
        self.assertEqual(first, second)

    def test_fingerprint_without_native_id_changes_with_content(self) -> None:
        first = event_fingerprint(Source.CODEX, "s1", _draft(content="a"))
        same = event_fingerprint(Source.CODEX, "s1", _draft(content="a"))
        edited = event_fingerprint(Source.CODEX, "s1", _draft(content="b"))
        self.assertEqual(first, same)
        self.assertNotEqual(first, edited)

    def test_fingerprint_is_scoped_to_source_and_session(self) -> None:
        draft = _draft(nativeId="x")
        self.assertNotEqual(
            event_fingerprint(Source.CODEX, "s1", draft),
            event_fingerprint(Source.CRUSH, "s1", draft),
        )
        self.assertNotEqual(
            event_fingerprint(Source.CODEX, "s1", draft),
            event_fingerprint(Source.CODEX, "s2", draft),
        )

    def test_coerce_role_aliases(self) -> None:
        self.assertEqual(coerce_role("Human"), Role.USER)
        self.assertEqual(coerce_role("model"), Role.ASSISTANT)
        self.assertEqual(coerce_role("developer"), Role.SYSTEM)
        self.assertIsNone(coerce_role("tool"))

    def test_export_format_aliases(self) -> None:
        self.assertEqual(ExportFormat.parse("md"), ExportFormat.MARKDOWN)
        self.assertEqual(ExportFormat.parse("json-lines"), ExportFormat.JSONL)
        self.assertEqual(ExportFormat.parse(" JSON "), ExportFormat.JSON)
        with self.assertRaises(ValueError):
            ExportFormat.parse("pdf")


class PricingTests(unittest.TestCase):
    def test_lookup_strips_date_suffix_and_provider_prefix(self) -> None:
        self.assertEqual(model_pricing.lookup("claude-sonnet-4-5-20250929").model_id, "claude-sonnet-4-5")
        self.assertEqual(model_pricing.lookup("openai/gpt-5-codex").model_id, "gpt-5-codex")
        self.assertIsNone(model_pricing.lookup("totally-unknown"))

    def test_estimate_cost(self) -> None:
        cost = model_pricing.estimate_cost("gpt-5", 1_000_000, 1_000_000)
        self.assertAlmostEqual(cost, 11.25)
        self.assertIsNone(model_pricing.estimate_cost(None, 10, 10))

    def test_extended_context_pricing(self) -> None:
        cost = model_pricing.estimate_cost("claude-sonnet-4-5", 300_000, 0)
        self.assertAlmostEqual(cost, 300_000 / 1_000_000 * 6.0)

    def test_estimate_tokens_rounds_up(self) -> None:
        self.assertEqual(model_pricing.estimate_tokens("abcde"), 2)
        self.assertEqual(model_pricing.estimate_tokens(None), 0)

    def test_provider_for_prefix_fallback(self) -> None:
        self.assertEqual(model_pricing.provider_for("claude-unreleased"), "anthropic")
        self.assertEqual(model_pricing.provider_for("o1-preview"), "openai")
        self.assertIsNone(model_pricing.provider_for(None))


if __name__ == "__main__":
    unittest.main()
