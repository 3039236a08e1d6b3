"""
Tests for CLI Output Formatters
===============================
Tests for src/unimem/cli/formatters.py covering tables, previews,
JSON output and ANSI color handling.
"""

import json

from unimem.cli.formatters import (
    Colors,
    entity_json,
    format_conflicts,
    format_entity,
    format_entity_table,
    format_search_results,
    format_stats,
    format_sync_state,
    to_json,
)
from unimem.core.memory_model import EntityLink, EntityType, MemoryStats, SearchResult

from helpers import make_entity


class TestColors:
    """Tests for ANSI color handling."""

    def test_green_color(self):
        result = Colors.green("test")
        assert result.startswith("\033[92m")
        assert result.endswith("\033[0m")

    def test_red_color(self):
        assert Colors.red("error") == "\033[91merror\033[0m"

    def test_yellow_color(self):
        assert Colors.yellow("warning") == "\033[93mwarning\033[0m"

    def test_bold(self):
        assert Colors.bold("important") == "\033[1mimportant\033[0m"


class TestEntityJson:

    def test_drops_embedding(self):
        entity = make_entity("e1", title="Ada")
        entity.embedding = [0.1, 0.2]
        data = entity_json(entity)
        assert "embedding" not in data
        assert data["hasEmbedding"] is True
        assert data["title"] == "Ada"

    def test_to_json_serializes_unknown_types(self):
        entity = make_entity("e1")
        data = json.loads(to_json({"when": entity.created_at}))
        assert data["when"] == str(entity.created_at)


class TestFormatEntityTable:

    def test_empty(self):
        assert format_entity_table([]) == "No entities found."

    def test_rows_and_truncation(self):
        long_id = "x" * 40
        entity = make_entity(long_id, title="T" * 80, tags=["a", "b", "c", "d"])
        table = format_entity_table([entity])

        assert "x" * 12 in table
        assert "x" * 13 not in table
        assert "T" * 40 + "..." in table
        assert "a, b, c" in table


class TestFormatEntity:

    def test_details(self):
        entity = make_entity("t1", EntityType.TASK, title="Ship", content="Release notes", priority="high")
        entity.links = [EntityLink("p1", EntityType.PROJECT, "part-of")]

        text = format_entity(entity)

        assert "Ship" in text
        assert "priority" in text and "high" in text
        assert "part-of" in text
        assert text.endswith("Release notes")
        assert "none" in text  # no embedding

    def test_empty_variant_fields_hidden(self):
        text = format_entity(make_entity("t1", EntityType.TASK))
        assert "due_date" not in text


class TestFormatSearchResults:

    def test_empty(self):
        assert format_search_results([]) == "No matching entities."

    def test_scores(self):
        result = SearchResult(entity=make_entity("e1", title="Ada"), score=1.234567, raw_score=0.9)
        table = format_search_results([result])
        assert "1.235" in table
        assert "0.9" in table


class TestFormatStats:

    def test_basic_stats(self):
        stats = MemoryStats(
            total_entities=3,
            by_layer={"working": 2, "episodic": 1},
            by_type={"daily-note": 2, "person": 1},
            vector_count=3,
            storage_size=2048,
        )
        text = format_stats(stats)
        assert "Unimem Statistics" in text
        assert "2048 bytes" in text
        assert "working" in text
        assert "daily-note" in text


class TestFormatSyncState:

    def test_synced_is_green(self):
        text = format_sync_state({"status": "synced", "pendingChanges": 0, "lastSyncVersion": 4})
        assert Colors.green("SYNCED") in text
        assert "never" in text

    def test_conflict_is_yellow(self):
        text = format_sync_state({"status": "conflict", "conflictCount": 2})
        assert Colors.yellow("CONFLICT") in text

    def test_error_shows_last_error(self):
        text = format_sync_state({"status": "error", "lastError": "connection refused"})
        assert Colors.red("ERROR") in text
        assert "connection refused" in text


class TestFormatConflicts:

    def test_empty(self):
        assert format_conflicts([]) == "No open conflicts."

    def test_deleted_sides(self):
        text = format_conflicts([
            {
                "entityId": "e1",
                "localVersion": {"title": "Mine"},
                "remoteVersion": None,
                "remoteSyncVersion": 7,
                "detectedAt": "2026-01-02T03:04:05.678+00:00",
            }
        ])
        assert "Mine" in text
        assert "(deleted)" in text
        assert "2026-01-02T03:04:05" in text
        assert ".678" not in text
