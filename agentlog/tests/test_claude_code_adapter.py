import json
import tempfile
import unittest
from pathlib import Path

from agentlog.errors import ParseError
from agentlog.models import ArtifactDescriptor, EventKind, HealthStatus, Role, Source
from agentlog.parsers.platforms.claude_code.parser import ClaudeCodeAdapter, parse_entry


def _line(uuid: str, entry_type: str, ts: str, message: dict | None = None, **extra) -> dict:
    entry = {"type": entry_type, "uuid": uuid, "timestamp": ts, "sessionId": "abc", "cwd": "/work/app", **extra}
    if message is not None:
        entry["message"] = message
    return entry


class ClaudeCodeAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.adapter = ClaudeCodeAdapter(self.root)

    def _write(self, project: str, session: str, lines: list) -> Path:
        path = self.root / project / f"{session}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines) + "\n",
            encoding="utf-8",
        )
        return path

    def test_discover_lists_session_files_per_project(self) -> None:
        self._write("-work-app", "s1", [_line("u1", "user", "2026-01-05T10:00:00Z", {"role": "user", "content": "hi"})])
        self._write("-work-lib", "s2", [_line("u2", "user", "2026-01-05T11:00:00Z", {"role": "user", "content": "yo"})])
        (self.root / "-work-lib" / "notes.txt").write_text("ignored", encoding="utf-8")

        artifacts = self.adapter.discover()

        self.assertEqual([a.externalId for a in artifacts], ["s1", "s2"])
        self.assertEqual(artifacts[0].project, "-work-app")
        self.assertTrue(all(a.source == Source.CLAUDE_CODE for a in artifacts))

    def test_discover_missing_root_returns_nothing(self) -> None:
        adapter = ClaudeCodeAdapter(self.root / "absent")
        self.assertEqual(adapter.discover(), [])
        self.assertEqual(adapter.health_check().status, HealthStatus.UNKNOWN)

    def test_parse_maps_nested_blocks_and_counts_malformed_lines(self) -> None:
        path = self._write(
            "-work-app",
            "s1",
            [
                {"type": "summary", "summary": "Fix the login bug"},
                _line("u1", "user", "2026-01-05T10:00:00Z", {"role": "user", "content": "please fix login"}),
                _line(
                    "u2",
                    "assistant",
                    "2026-01-05T10:00:05Z",
                    {
                        "role": "assistant",
                        "model": "claude-sonnet-4-5-20250929",
                        "usage": {"input_tokens": 10, "cache_read_input_tokens": 5, "output_tokens": 7},
                        "content": [
                            {"type": "thinking", "thinking": "look at auth.py"},
                            {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "auth.py"}},
                        ],
                    },
                    parentUuid="u1",
                ),
                "{not json",
                _line(
                    "u3",
                    "user",
                    "2026-01-05T10:00:06Z",
                    {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "def login(): ..."}]},
                ),
                {"type": "user", "uuid": "u4", "message": {"role": "user", "content": "no timestamp"}},
            ],
        )
        artifact = self.adapter.discover()[0]

        result = self.adapter.parse(artifact)

        self.assertEqual(result.failed, 2)
        self.assertEqual(len(result.events), 3)
        self.assertEqual(result.session.title, "Fix the login bug")
        self.assertEqual(result.session.project, "/work/app")
        self.assertEqual(result.session.rawPayload["filePath"], str(path))

        user, call, tool_result = result.events
        self.assertEqual((user.kind, user.role, user.content), (EventKind.MESSAGE, Role.USER, "please fix login"))
        self.assertEqual(call.kind, EventKind.TOOL_CALL)
        self.assertEqual(call.attributes["toolName"], "Read")
        self.assertEqual(call.attributes["callId"], "toolu_1")
        self.assertEqual(call.attributes["inputTokens"], 15)
        self.assertEqual(call.attributes["outputTokens"], 7)
        self.assertEqual(call.attributes["parentId"], "u1")
        self.assertIn("[Thinking] look at auth.py", call.content)
        self.assertEqual(tool_result.kind, EventKind.TOOL_RESULT)
        self.assertEqual(tool_result.attributes["callId"], "toolu_1")
        self.assertEqual([e.sequence for e in result.events], [0, 1, 2])
        self.assertEqual(user.nativeId, "u1")
        self.assertEqual(user.rawPayload["uuid"], "u1")

    def test_parse_vanished_file_raises_parse_error(self) -> None:
        artifact = ArtifactDescriptor(
            source=Source.CLAUDE_CODE,
            identity="gone",
            changeMarker="0:0",
            path=str(self.root / "p" / "gone.jsonl"),
            externalId="gone",
        )
        with self.assertRaises(ParseError):
            self.adapter.parse(artifact)

    def test_parse_entry_flat_legacy_lines(self) -> None:
        kind, role, content, attributes = parse_entry(
            {"type": "tool_call", "name": "Bash", "id": "c1", "arguments": {"command": "ls"}}
        )
        self.assertEqual(kind, EventKind.TOOL_CALL)
        self.assertEqual(role, Role.ASSISTANT)
        self.assertEqual(attributes["toolInput"], {"command": "ls"})
        self.assertIn("Bash", content)

        kind, _, content, _ = parse_entry({"type": "error", "message": "rate limited"})
        self.assertEqual((kind, content), (EventKind.ERROR, "rate limited"))

    def test_health_and_path_ownership(self) -> None:
        self.assertEqual(self.adapter.health_check().status, HealthStatus.DEGRADED)
        path = self._write("-work-app", "s1", [_line("u1", "user", "2026-01-05T10:00:00Z", {"role": "user", "content": "hi"})])
        self.assertEqual(self.adapter.health_check().status, HealthStatus.HEALTHY)
        self.assertTrue(self.adapter.owns_path(path))
        self.assertFalse(self.adapter.owns_path(self.root / "-work-app" / "notes.txt"))


if __name__ == "__main__":
    unittest.main()
