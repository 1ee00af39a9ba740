import asyncio
import tempfile
import unittest
from pathlib import Path

from watchfiles import Change

from agentlog.db.db_poller import DatabasePoller
from agentlog.db.file_watcher import ChangeSignal, FileWatcher
from agentlog.errors import SchemaDriftError
from agentlog.models import Source
from agentlog.parsers.platforms.claude_code.parser import ClaudeCodeAdapter
from agentlog.parsers.platforms.codex.parser import CodexAdapter
from agentlog.parsers.platforms.crush.parser import CrushAdapter


class _MarkerAdapter(CrushAdapter):
    """Crush adapter whose poll marker is scripted."""

    def __init__(self, root: Path, markers: list):
        super().__init__(root)
        self.markers = list(markers)

    def poll_marker(self):
        marker = self.markers.pop(0)
        if isinstance(marker, Exception):
            raise marker
        return marker


class FileWatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.claude_root = self.root / "claude"
        self.codex_root = self.root / "codex"
        self.claude_root.mkdir()
        self.codex_root.mkdir()
        self.watcher = FileWatcher(
            {
                Source.CLAUDE_CODE: ClaudeCodeAdapter(self.claude_root),
                Source.CODEX: CodexAdapter(self.codex_root),
                Source.CRUSH: CrushAdapter(self.root),
            },
            asyncio.Queue(),
            debounce_ms=50,
        )

    def test_polled_sources_are_not_watched(self) -> None:
        self.assertEqual(set(self.watcher.adapters), {Source.CLAUDE_CODE, Source.CODEX})
        self.assertEqual(self.watcher.watch_paths(), [self.claude_root, self.codex_root])

    def test_changes_are_grouped_by_owning_source(self) -> None:
        claude_a = str(self.claude_root / "-work-app" / "a.jsonl")
        claude_b = str(self.claude_root / "-work-app" / "b.jsonl")
        codex_file = str(self.codex_root / "2026" / "01" / "05" / "rollout-x.jsonl")
        changes = {
            (Change.modified, claude_b),
            (Change.added, claude_a),
            (Change.deleted, codex_file),
            (Change.modified, str(self.claude_root / "-work-app" / "notes.txt")),
            (Change.modified, str(self.root / "elsewhere.jsonl")),
        }

        signals = {signal.source: signal for signal in self.watcher._classify_changes(changes)}

        self.assertEqual(set(signals), {Source.CLAUDE_CODE, Source.CODEX})
        self.assertEqual(signals[Source.CLAUDE_CODE].paths, (claude_a, claude_b))
        self.assertEqual(signals[Source.CODEX], ChangeSignal(source=Source.CODEX, paths=(codex_file,), reason="fs"))


class DatabasePollerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)

    async def test_first_tick_is_a_baseline(self) -> None:
        queue: asyncio.Queue[ChangeSignal] = asyncio.Queue()
        adapter = _MarkerAdapter(self.root, ["a", "a", "b", SchemaDriftError("crush.db", ["messages.parts"]), "c"])
        poller = DatabasePoller({Source.CRUSH: adapter, Source.CLAUDE_CODE: ClaudeCodeAdapter(self.root)}, queue, 1)

        self.assertEqual(list(poller.adapters), [Source.CRUSH])
        self.assertEqual(await poller.poll_once(), [])
        self.assertEqual(await poller.poll_once(), [])
        [signal] = await poller.poll_once()
        self.assertEqual((signal.source, signal.reason), (Source.CRUSH, "poll"))
        self.assertEqual(queue.qsize(), 1)

        # A failed check keeps the previous marker.
        self.assertEqual(await poller.poll_once(), [])
        self.assertEqual(len(await poller.poll_once()), 1)

    async def test_start_without_polled_sources_is_a_no_op(self) -> None:
        poller = DatabasePoller({Source.CODEX: CodexAdapter(self.root)}, asyncio.Queue(), 0.01)
        await poller.start()
        self.assertFalse(poller.is_running)
        await poller.stop()

    async def test_loop_emits_signals_until_stopped(self) -> None:
        queue: asyncio.Queue[ChangeSignal] = asyncio.Queue()
        adapter = _MarkerAdapter(self.root, ["a"] + [str(i) for i in range(200)])
        poller = DatabasePoller({Source.CRUSH: adapter}, queue, 0.05)

        await poller.start()
        try:
            signal = await asyncio.wait_for(queue.get(), timeout=5)
        finally:
            await poller.stop()

        self.assertEqual(signal.source, Source.CRUSH)
        self.assertFalse(poller.is_running)


if __name__ == "__main__":
    unittest.main()
