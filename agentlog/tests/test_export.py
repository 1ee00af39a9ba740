import json
import unittest

from agentlog.errors import ParseError
from agentlog.models import Event, EventKind, ExportFormat, Role, SearchResult, Session, SessionMetrics, Source
from agentlog.services.export import export_search, export_session, parse_json_export, parse_jsonl_export


def _session() -> Session:
    return Session(
        id="S-1",
        source=Source.CODEX,
        externalId="rollout-1",
        project="app/main",
        title="Run the tests",
        createdAt="2026-01-05T10:00:00.000Z",
        updatedAt="2026-01-05T10:00:09.000Z",
        eventCount=3,
    )


def _events() -> list[Event]:
    # Deliberately out of order; exports sort by timestamp then sequence.
    return [
        Event(
            id="E-3",
            sessionId="S-1",
            fingerprint="f3",
            sequence=2,
            kind=EventKind.TOOL_RESULT,
            content="```\n1 failed\n```",
            timestamp="2026-01-05T10:00:05.000Z",
            attributes={"callId": "c1", "isError": True},
        ),
        Event(
            id="E-1",
            sessionId="S-1",
            fingerprint="f1",
            sequence=0,
            kind=EventKind.MESSAGE,
            role=Role.USER,
            content="run the tests",
            timestamp="2026-01-05T10:00:00.000Z",
        ),
        Event(
            id="E-2",
            sessionId="S-1",
            fingerprint="f2",
            sequence=1,
            kind=EventKind.TOOL_CALL,
            role=Role.ASSISTANT,
            content="[Tool: shell]",
            timestamp="2026-01-05T10:00:02.000Z",
            nativeId="c1:call",
            attributes={"toolName": "shell", "toolInput": {"command": ["pytest"]}},
        ),
    ]


class ExportSessionTests(unittest.TestCase):
    def test_json_round_trip_preserves_ordered_events(self) -> None:
        metrics = SessionMetrics(sessionId="S-1", totalEvents=3, toolCallCount=1)
        text = export_session(_session(), _events(), metrics, ExportFormat.JSON)

        payload = json.loads(text)
        self.assertEqual(payload["version"], 1)
        self.assertEqual(payload["metrics"]["toolCallCount"], 1)

        session, events = parse_json_export(text)
        self.assertEqual(session, _session())
        self.assertEqual([e.id for e in events], ["E-1", "E-2", "E-3"])
        self.assertEqual(events[1].attributes["toolInput"], {"command": ["pytest"]})
        self.assertEqual(events[0].role, Role.USER)

    def test_jsonl_round_trip(self) -> None:
        text = export_session(_session(), _events(), None, "ndjson")
        lines = text.strip().splitlines()
        self.assertEqual(len(lines), 4)
        self.assertEqual(json.loads(lines[0])["type"], "session")

        session, events = parse_jsonl_export(text)
        self.assertEqual(session.externalId, "rollout-1")
        self.assertEqual([e.sequence for e in events], [0, 1, 2])
        self.assertEqual(events[2].kind, EventKind.TOOL_RESULT)

    def test_markdown_fences_tool_content(self) -> None:
        metrics = SessionMetrics(
            sessionId="S-1", messageCount=1, userMessages=1, model="gpt-5", inputTokens=10, outputTokens=4, tokensEstimated=True
        )
        text = export_session(_session(), _events(), metrics, "md")

        self.assertTrue(text.startswith("# Run the tests\n"))
        self.assertIn("- **Source:** codex", text)
        self.assertIn("- Tokens: 10 in / 4 out (estimated)", text)
        self.assertIn("### 2026-01-05T10:00:00.000Z message (user)", text)
        self.assertIn("````\n```\n1 failed\n```\n````", text)
        self.assertLess(text.index("message (user)"), text.index("tool result"))

    def test_parse_rejects_broken_exports(self) -> None:
        with self.assertRaises(ParseError):
            parse_json_export("{nope")
        with self.assertRaises(ParseError):
            parse_json_export(json.dumps({"events": []}))
        with self.assertRaises(ParseError):
            parse_jsonl_export('{"type": "event", "event": {}}\n')
        with self.assertRaises(ParseError) as ctx:
            parse_jsonl_export('{"type": "mystery"}\n')
        self.assertEqual(ctx.exception.line, 1)

    def test_unknown_format(self) -> None:
        with self.assertRaises(ValueError):
            export_session(_session(), [], None, "yaml")


class ExportSearchTests(unittest.TestCase):
    def _results(self) -> list[SearchResult]:
        event = _events()[1]
        return [
            SearchResult(
                event=event,
                source=Source.CODEX,
                externalId="rollout-1",
                project="app/main",
                sessionTitle="Run the tests",
                snippet="[run] the tests",
                rank=-1.5,
            )
        ]

    def test_all_formats(self) -> None:
        payload = json.loads(export_search("run", self._results(), ExportFormat.JSON))
        self.assertEqual((payload["query"], payload["count"]), ("run", 1))

        jsonl = export_search("run", self._results(), ExportFormat.JSONL)
        self.assertEqual(json.loads(jsonl)["event"]["id"], "E-1")

        markdown = export_search("run", self._results(), ExportFormat.MARKDOWN)
        self.assertIn("# Search: run", markdown)
        self.assertIn("1. **codex** · app/main · Run the tests", markdown)
        self.assertIn("[run] the tests", markdown)


if __name__ == "__main__":
    unittest.main()
