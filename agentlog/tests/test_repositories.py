import unittest
from datetime import datetime, timezone

import aiosqlite

from agentlog.db.connection import write_transaction
from agentlog.db.repositories import (
    SqliteAnalyticsRepository,
    SqliteCheckpointRepository,
    SqliteMetricsRepository,
    SqliteSearchRepository,
    SqliteSessionRepository,
)
from agentlog.db.repositories.search import build_fts_query
from agentlog.db.sqlite_migrations import run_migrations
from agentlog.models import EventDraft, EventKind, IngestCheckpoint, Role, SearchFacets, SessionDraft, Source
from agentlog.services.session_metrics import compute_session_metrics


def _ts(second: int) -> datetime:
    return datetime(2026, 1, 5, 10, 0, second, tzinfo=timezone.utc)


def _draft(source: Source, external_id: str, title: str | None = None, project: str | None = None) -> SessionDraft:
    return SessionDraft(source=source, externalId=external_id, title=title, project=project)


class RepositoryTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.sessions = SqliteSessionRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _store(self, draft: SessionDraft, events: list[EventDraft], created: str, updated: str) -> tuple[str, int]:
        async with write_transaction(self.db):
            session_id = await self.sessions.upsert_session(draft, created_at=created, updated_at=updated)
            changed = await self.sessions.upsert_events(session_id, draft, events)
        return session_id, changed


class SessionRepositoryTests(RepositoryTestCase):
    async def test_session_upsert_merges_on_source_and_external_id(self) -> None:
        draft = _draft(Source.CLAUDE_CODE, "abc", title="First title", project="/work/app")
        first, _ = await self._store(draft, [], "2026-01-05T10:00:00.000Z", "2026-01-05T10:05:00.000Z")
        second, _ = await self._store(
            _draft(Source.CLAUDE_CODE, "abc"), [], "2026-01-05T10:01:00.000Z", "2026-01-05T10:03:00.000Z"
        )

        self.assertEqual(first, second)
        session = await self.sessions.get_by_id(first)
        self.assertEqual(session.title, "First title")
        self.assertEqual(session.project, "/work/app")
        self.assertEqual(session.createdAt, "2026-01-05T10:00:00.000Z")
        self.assertEqual(session.updatedAt, "2026-01-05T10:05:00.000Z")

        # Same external id under a different source is a different session.
        other, _ = await self._store(_draft(Source.CODEX, "abc"), [], "2026-01-05T10:00:00.000Z", "2026-01-05T10:00:00.000Z")
        self.assertNotEqual(first, other)
        by_external = await self.sessions.get_by_external_id(Source.CODEX.value, "abc")
        self.assertEqual(by_external.id, other)

    async def test_event_upsert_is_idempotent_and_reports_changes(self) -> None:
        draft = _draft(Source.CODEX, "r1")
        events = [
            EventDraft(kind=EventKind.MESSAGE, role=Role.USER, content="hello", timestamp=_ts(0), nativeId="n1", sequence=0),
            EventDraft(kind=EventKind.MESSAGE, role=Role.ASSISTANT, content="hi", timestamp=_ts(1), position="7", sequence=1),
        ]
        session_id, inserted = await self._store(draft, events, "2026-01-05T10:00:00.000Z", "2026-01-05T10:00:01.000Z")
        _, repeated = await self._store(draft, events, "2026-01-05T10:00:00.000Z", "2026-01-05T10:00:01.000Z")
        self.assertEqual((inserted, repeated), (2, 0))

        # A native id keeps its row when content changes.
        edited = [events[0].model_copy(update={"content": "hello again"}), events[1]]
        _, changed = await self._store(draft, edited, "2026-01-05T10:00:00.000Z", "2026-01-05T10:00:01.000Z")
        self.assertEqual(changed, 1)
        self.assertEqual(await self.sessions.count_events(session_id), 2)

        # Without a native id, an in-place edit is stored as a new event.
        edited = [edited[0], events[1].model_copy(update={"content": "hi there"})]
        _, changed = await self._store(draft, edited, "2026-01-05T10:00:00.000Z", "2026-01-05T10:00:01.000Z")
        self.assertEqual(changed, 1)
        self.assertEqual(await self.sessions.count_events(session_id), 3)

    async def test_events_order_by_timestamp_then_sequence(self) -> None:
        draft = _draft(Source.CLAUDE_CODE, "order")
        events = [
            EventDraft(kind=EventKind.MESSAGE, content="late", timestamp=_ts(5), nativeId="a", sequence=0),
            EventDraft(kind=EventKind.TOOL_CALL, content="tie-2", timestamp=_ts(1), nativeId="b", sequence=2),
            EventDraft(kind=EventKind.MESSAGE, content="tie-1", timestamp=_ts(1), nativeId="c", sequence=1),
        ]
        session_id, _ = await self._store(draft, events, "2026-01-05T10:00:01.000Z", "2026-01-05T10:00:05.000Z")

        ordered = await self.sessions.get_events(session_id)
        self.assertEqual([e.content for e in ordered], ["tie-1", "tie-2", "late"])
        self.assertEqual(ordered[0].timestamp, "2026-01-05T10:00:01.000Z")
        only_calls = await self.sessions.get_events(session_id, kind=EventKind.TOOL_CALL.value)
        self.assertEqual([e.content for e in only_calls], ["tie-2"])

        session = await self.sessions.get_by_id("order")
        self.assertEqual(session.id, session_id)
        self.assertEqual(session.eventCount, 3)

    async def test_list_filters_and_facets(self) -> None:
        await self._store(_draft(Source.CLAUDE_CODE, "a", "Fix login", "/work/app"), [], "2026-01-01T00:00:00.000Z", "2026-01-01T00:00:00.000Z")
        await self._store(_draft(Source.CLAUDE_CODE, "b", "Add cache", "/work/lib"), [], "2026-01-03T00:00:00.000Z", "2026-01-03T00:00:00.000Z")
        await self._store(_draft(Source.CODEX, "c", "Fix tests", "/work/app"), [], "2026-01-02T00:00:00.000Z", "2026-01-02T00:00:00.000Z")

        everything = await self.sessions.list_paginated()
        self.assertEqual([s.externalId for s in everything], ["b", "c", "a"])

        filters = {"source": Source.CLAUDE_CODE, "since": "2026-01-02T00:00:00.000Z"}
        self.assertEqual([s.externalId for s in await self.sessions.list_paginated(filters=filters)], ["b"])
        self.assertEqual(await self.sessions.count({"title": "FIX"}), 2)
        self.assertEqual(await self.sessions.count({"project": "/work/app"}), 2)
        self.assertEqual([s.externalId for s in await self.sessions.list_paginated(offset=1, limit=1)], ["c"])

        self.assertEqual(await self.sessions.list_sources(), ["claude_code", "codex"])
        self.assertEqual(await self.sessions.list_projects(Source.CODEX.value), ["/work/app"])


class SearchRepositoryTests(RepositoryTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.search = SqliteSearchRepository(self.db)
        await self._store(
            _draft(Source.CLAUDE_CODE, "s1", "Flamingo migration", "/work/app"),
            [
                EventDraft(kind=EventKind.MESSAGE, role=Role.USER, content="migrate the flamingo table", timestamp=_ts(0), nativeId="1"),
                EventDraft(kind=EventKind.ERROR, content="flamingo lock timeout", timestamp=_ts(5), nativeId="2"),
            ],
            "2026-01-05T10:00:00.000Z",
            "2026-01-05T10:00:05.000Z",
        )
        await self._store(
            _draft(Source.CODEX, "s2", "Unrelated", "/work/lib"),
            [EventDraft(kind=EventKind.MESSAGE, role=Role.USER, content="flamingo docs please", timestamp=_ts(2), nativeId="3")],
            "2026-01-05T10:00:02.000Z",
            "2026-01-05T10:00:02.000Z",
        )

    async def test_search_events_across_sources(self) -> None:
        results = await self.search.search_events("flamingo")
        self.assertEqual(len(results), 3)
        self.assertEqual({r.source for r in results}, {Source.CLAUDE_CODE, Source.CODEX})
        self.assertTrue(all("[flamingo]" in r.snippet.lower() for r in results))
        self.assertEqual(await self.search.search_events("   "), [])

    async def test_facets_apply_inside_the_query(self) -> None:
        by_source = await self.search.search_events("flamingo", SearchFacets(source=Source.CODEX))
        self.assertEqual([r.externalId for r in by_source], ["s2"])

        by_kind = await self.search.search_events("flamingo", SearchFacets(kind=EventKind.ERROR))
        self.assertEqual([r.event.content for r in by_kind], ["flamingo lock timeout"])

        windowed = await self.search.search_events("flamingo", SearchFacets(since="2026-01-05T10:00:01.000Z", project="/work/app"))
        self.assertEqual([r.event.kind for r in windowed], [EventKind.ERROR])

        paged = await self.search.search_events("flamingo", limit=2, offset=2)
        self.assertEqual(len(paged), 1)

    async def test_operator_text_is_quoted(self) -> None:
        self.assertEqual(build_fts_query('flamingo OR "x" NEAR'), '"flamingo" "OR" "x" "NEAR"')
        self.assertEqual(build_fts_query("tab", prefix=True), '"tab"*')
        self.assertEqual(await self.search.search_events("flamingo AND"), [])

    async def test_search_sessions_by_title_prefix(self) -> None:
        sessions = await self.search.search_sessions("flam")
        self.assertEqual([s.externalId for s in sessions], ["s1"])
        self.assertEqual(await self.search.search_sessions("flam", SearchFacets(source=Source.CODEX)), [])


class MetricsAndAnalyticsTests(RepositoryTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.metrics = SqliteMetricsRepository(self.db)
        self.analytics = SqliteAnalyticsRepository(self.db)
        draft = _draft(Source.CLAUDE_CODE, "m1", "Edit things")
        self.session_id, _ = await self._store(
            draft,
            [
                EventDraft(kind=EventKind.MESSAGE, role=Role.USER, content="edit a.py", timestamp=_ts(0), nativeId="1"),
                EventDraft(
                    kind=EventKind.TOOL_CALL,
                    role=Role.ASSISTANT,
                    content="[Tool: Edit]",
                    timestamp=_ts(1),
                    nativeId="2",
                    attributes={
                        "toolName": "Edit",
                        "callId": "t1",
                        "toolInput": {"file_path": "a.py", "old_string": "x", "new_string": "y\nz"},
                        "model": "claude-sonnet-4-5",
                    },
                ),
                EventDraft(
                    kind=EventKind.TOOL_RESULT,
                    role=Role.USER,
                    content="error: file changed",
                    timestamp=_ts(4),
                    nativeId="3",
                    attributes={"callId": "t1", "isError": True},
                ),
                EventDraft(kind=EventKind.ERROR, content="API overloaded", timestamp=_ts(6), nativeId="4"),
            ],
            "2026-01-05T10:00:00.000Z",
            "2026-01-05T10:00:06.000Z",
        )
        session = await self.sessions.get_by_id(self.session_id)
        events = await self.sessions.get_events(self.session_id)
        async with write_transaction(self.db):
            await self.metrics.replace_for_session(*compute_session_metrics(session, events))

    async def test_metrics_round_trip_and_replace(self) -> None:
        stored = await self.metrics.get_metrics(self.session_id)
        self.assertEqual(stored.toolCallCount, 1)
        self.assertEqual(stored.errorCount, 1)
        self.assertEqual(stored.model, "claude-sonnet-4-5")
        self.assertTrue(stored.tokensEstimated)

        calls = await self.metrics.list_tool_calls(self.session_id)
        self.assertEqual([(c.toolName, c.durationMs, c.success) for c in calls], [("Edit", 3000, False)])
        files = await self.metrics.list_files(self.session_id)
        self.assertEqual([(f.filePath, f.linesAdded, f.linesRemoved) for f in files], [("a.py", 2, 1)])

        # Recomputing replaces rather than appends.
        session = await self.sessions.get_by_id(self.session_id)
        events = await self.sessions.get_events(self.session_id)
        async with write_transaction(self.db):
            await self.metrics.replace_for_session(*compute_session_metrics(session, events))
        self.assertEqual(len(await self.metrics.list_tool_calls(self.session_id)), 1)
        self.assertIsNone(await self.metrics.get_metrics("S-missing"))

    async def test_aggregate_stats_dimensions(self) -> None:
        kinds = {row.key: row.count for row in await self.analytics.aggregate_stats("kind")}
        self.assertEqual(kinds, {"message": 1, "tool_call": 1, "tool_result": 1, "error": 1})

        days = await self.analytics.aggregate_stats("day")
        self.assertEqual([(row.key, row.count, row.sessions) for row in days], [("2026-01-05", 4, 1)])

        tools = await self.analytics.aggregate_stats("tool")
        self.assertEqual((tools[0].key, tools[0].value, tools[0].extra["failures"]), ("Edit", 3000, 1))

        signatures = await self.analytics.aggregate_stats("error_signatures")
        self.assertEqual([row.key for row in signatures], ["API overloaded"])

        churn = await self.analytics.aggregate_stats("churn")
        self.assertEqual(churn[0].extra, {"linesAdded": 2, "linesRemoved": 1})

        models = await self.analytics.aggregate_stats("model")
        self.assertEqual(models[0].key, "claude-sonnet-4-5")

        self.assertEqual(await self.analytics.aggregate_stats("kind", since="2026-02-01T00:00:00.000Z"), [])
        with self.assertRaises(ValueError):
            await self.analytics.aggregate_stats("weather")


class CheckpointRepositoryTests(RepositoryTestCase):
    async def test_checkpoint_lifecycle(self) -> None:
        repo = SqliteCheckpointRepository(self.db)
        checkpoint = IngestCheckpoint(
            source=Source.CODEX,
            artifact="/logs/rollout-1.jsonl",
            changeMarker="10:100",
            cursor="4",
            lastIngestedAt="2026-01-05T10:00:00.000Z",
        )
        async with write_transaction(self.db):
            await repo.upsert(checkpoint)
            await repo.upsert(checkpoint.model_copy(update={"changeMarker": "12:140", "parseMs": 3}))

        stored = await repo.get(Source.CODEX.value, "/logs/rollout-1.jsonl")
        self.assertEqual((stored.changeMarker, stored.parseMs, stored.cursor), ("12:140", 3, "4"))
        self.assertIsNone(await repo.get(Source.CRUSH.value, "/logs/rollout-1.jsonl"))
        self.assertEqual(len(await repo.list_all(Source.CODEX.value)), 1)

        async with write_transaction(self.db):
            await repo.delete(Source.CODEX.value, "/logs/rollout-1.jsonl")
        self.assertEqual(await repo.list_all(), [])


if __name__ == "__main__":
    unittest.main()
