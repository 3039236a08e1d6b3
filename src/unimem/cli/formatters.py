"""
CLI Output Formatters

Tables and summaries for CLI commands.
"""

import json
from typing import Any, Dict, List, Sequence

from tabulate import tabulate

from unimem.core.memory_model import BaseEntity, MemoryStats, SearchResult, entity_to_dict


class Colors:
    """ANSI color codes for terminal output."""
    OKGREEN = "\033[92m"
    WARNING = "\033[93m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"
    BOLD = "\033[1m"

    @staticmethod
    def green(text: str) -> str:
        return f"{Colors.OKGREEN}{text}{Colors.ENDC}"

    @staticmethod
    def red(text: str) -> str:
        return f"{Colors.FAIL}{text}{Colors.ENDC}"

    @staticmethod
    def yellow(text: str) -> str:
        return f"{Colors.WARNING}{text}{Colors.ENDC}"

    @staticmethod
    def bold(text: str) -> str:
        return f"{Colors.BOLD}{text}{Colors.ENDC}"


def _preview(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text[:width] + "..." if len(text) > width else text


def to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def entity_json(entity: BaseEntity) -> Dict[str, Any]:
    """Entity as JSON without the (long) embedding vector."""
    data = entity_to_dict(entity, include_embedding=False)
    data["hasEmbedding"] = bool(entity.embedding)
    return data


def format_entity_table(entities: Sequence[BaseEntity]) -> str:
    if not entities:
        return "No entities found."
    rows = [
        [
            e.id[:12],
            e.type.value,
            e.memory_layer.value,
            _preview(e.title, 40),
            ", ".join(e.tags[:3]),
            e.updated_at.strftime("%Y-%m-%d %H:%M"),
        ]
        for e in entities
    ]
    return tabulate(rows, headers=["ID", "Type", "Layer", "Title", "Tags", "Updated"], tablefmt="grid")


def format_search_results(results: Sequence[SearchResult]) -> str:
    if not results:
        return "No matching entities."
    rows = [
        [
            i,
            r.entity.id[:12],
            r.entity.type.value,
            r.entity.memory_layer.value,
            _preview(r.entity.title, 40),
            f"{r.score:.3f}",
            f"{r.raw_score:.3f}" if r.raw_score is not None else "",
        ]
        for i, r in enumerate(results, 1)
    ]
    return tabulate(rows, headers=["#", "ID", "Type", "Layer", "Title", "Score", "Similarity"], tablefmt="grid")


def format_entity(entity: BaseEntity) -> str:
    """Detailed single-entity view."""
    rows = [
        ["ID", entity.id],
        ["Type", entity.type.value],
        ["Layer", entity.memory_layer.value],
        ["Title", entity.title],
        ["Tags", ", ".join(entity.tags)],
        ["Created", entity.created_at.isoformat()],
        ["Updated", entity.updated_at.isoformat()],
        ["Embedding", f"{len(entity.embedding)} dims" if entity.embedding else "none"],
    ]
    for name, value in entity.variant_fields().items():
        if value not in (None, "", []):
            rows.append([name, value])
    lines = [tabulate(rows, tablefmt="plain")]
    if entity.links:
        lines.append("")
        lines.append(Colors.bold("Links:"))
        lines.append(
            tabulate(
                [[l.target_id, l.target_type.value, l.relationship, l.strength] for l in entity.links],
                headers=["Target", "Type", "Relationship", "Strength"],
            )
        )
    if entity.content:
        lines.append("")
        lines.append(entity.content)
    return "\n".join(lines)


def format_stats(stats: MemoryStats) -> str:
    lines = ["=" * 40, Colors.bold("Unimem Statistics"), "=" * 40, ""]
    lines.append(f"{Colors.bold('Entities:')}   {stats.total_entities:>6}")
    lines.append(f"{Colors.bold('Embedded:')}   {stats.vector_count:>6}")
    lines.append(f"{Colors.bold('Storage:')}    {stats.storage_size:>6} bytes")
    lines.append("")
    lines.append(tabulate(sorted(stats.by_layer.items()), headers=["Layer", "Count"]))
    lines.append("")
    lines.append(tabulate(sorted(stats.by_type.items()), headers=["Type", "Count"]))
    return "\n".join(lines)


def format_sync_state(state: Dict[str, Any]) -> str:
    status = state.get("status", "unknown")
    if status == "synced":
        status_text = Colors.green(status.upper())
    elif status in ("pending", "conflict"):
        status_text = Colors.yellow(status.upper())
    else:
        status_text = Colors.red(status.upper())
    rows = [
        ["Status", status_text],
        ["Pending changes", state.get("pendingChanges", 0)],
        ["Conflicts", state.get("conflictCount", 0)],
        ["Last synced", state.get("lastSyncedAt") or "never"],
        ["Sync version", state.get("lastSyncVersion") if state.get("lastSyncVersion") is not None else "-"],
    ]
    if state.get("lastError"):
        rows.append(["Last error", state["lastError"]])
    return tabulate(rows, tablefmt="plain")


def format_conflicts(conflicts: List[Dict[str, Any]]) -> str:
    if not conflicts:
        return "No open conflicts."
    rows = []
    for c in conflicts:
        local = c.get("localVersion")
        remote = c.get("remoteVersion")
        rows.append(
            [
                c["entityId"][:12],
                _preview(local["title"], 30) if local else "(deleted)",
                _preview(remote["title"], 30) if remote else "(deleted)",
                c.get("remoteSyncVersion"),
                c.get("detectedAt", "")[:19],
            ]
        )
    return tabulate(rows, headers=["Entity", "Local", "Remote", "Server version", "Detected"], tablefmt="grid")
