"""
Unimem CLI - Main Entry Point

Command-line interface for Unimem entity operations.

Usage:
    unimem add task "Write report" -f priority=high -t work
    unimem search "quarterly report"
    unimem related <entity-id> --context
    unimem consolidate
    unimem sync
    unimem conflicts
    unimem resolve <entity-id> remote
"""

import asyncio
import dataclasses
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import click

from unimem.core.config import StorageConfig, UnimemConfig, load_config
from unimem.core.container import Container, build_container
from unimem.core.exceptions import EntityNotFoundError, UnimemError, ValidationError, is_debug_mode
from unimem.core.logging_config import configure_logging
from unimem.core.memory_model import (
    DATETIME_FIELDS,
    EntityDraft,
    EntityFilter,
    EntityLink,
    EntityType,
    MemoryLayerType,
    parse_datetime,
)
from unimem.core.retrieval import RetrievalContext, RetrievalEngine
from unimem.sync.models import ConflictResolution

from .formatters import (
    entity_json,
    format_conflicts,
    format_entity,
    format_entity_table,
    format_search_results,
    format_stats,
    format_sync_state,
    to_json,
)

_ENTITY_TYPES = [t.value for t in EntityType]
_LAYERS = [l.value for l in MemoryLayerType]
_LIST_FIELDS = frozenset({"employees", "participants"})


def cli_storage_defaults() -> StorageConfig:
    """Entities written by one invocation must be visible to the next."""
    return StorageConfig(backend="sqlite", sqlite_path=str(Path.home() / ".unimem" / "unimem.db"))


# ============================================================================
# Container Lifecycle
# ============================================================================

@asynccontextmanager
async def engine_context(config: UnimemConfig):
    """
    Async context manager for the application container.

    Usage:
        async with engine_context(config) as container:
            entity = await container.engine.get_entity(entity_id)
    """
    container = build_container(config)
    try:
        await container.initialize()
        yield container
    finally:
        await container.close()


def run_command(ctx: click.Context, func: Callable[[Container], Any]) -> Any:
    """
    Run ``func(container)`` inside a fresh container on a new event loop.

    UnimemError is reported as a CLI error (exit code 1), as JSON when
    ``--json`` was given.
    """
    async def _run():
        async with engine_context(ctx.obj["config"]) as container:
            return await func(container)

    try:
        return asyncio.run(_run())
    except UnimemError as e:
        if ctx.obj.get("json"):
            click.echo(to_json({"success": False, **e.to_dict(include_traceback=is_debug_mode())}))
            ctx.exit(1)
        raise click.ClickException(str(e)) from e


def _emit(ctx: click.Context, data: Any, text: str) -> None:
    click.echo(to_json(data) if ctx.obj.get("json") else text)


# ---- Option parsing ---- #

def _coerce_field(name: str, raw: str) -> Any:
    if name in DATETIME_FIELDS:
        return parse_datetime(raw)
    if name in _LIST_FIELDS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def parse_fields(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    """``key=value`` pairs into variant fields (dashes become underscores)."""
    fields = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--field")
        name = key.strip().replace("-", "_")
        try:
            fields[name] = _coerce_field(name, value)
        except ValueError as e:
            raise click.BadParameter(f"invalid value for {name}: {e}", param_hint="--field") from e
    return fields


def parse_link(value: str) -> EntityLink:
    """``target_id:target_type[:relationship[:strength]]``"""
    parts = value.split(":")
    if len(parts) < 2:
        raise click.BadParameter(f"expected id:type[:relationship[:strength]], got '{value}'", param_hint="--link")
    try:
        return EntityLink(
            target_id=parts[0],
            target_type=parts[1],
            relationship=parts[2] if len(parts) > 2 and parts[2] else "related",
            strength=float(parts[3]) if len(parts) > 3 else 1.0,
        )
    except (ValueError, ValidationError) as e:
        raise click.BadParameter(str(e), param_hint="--link") from e


def _filter(types: Tuple[str, ...], layers: Tuple[str, ...], tags: Tuple[str, ...] = ()) -> Optional[EntityFilter]:
    if not (types or layers or tags):
        return None
    return EntityFilter(
        types=[EntityType(t) for t in types] or None,
        memory_layers=[MemoryLayerType(l) for l in layers] or None,
        tags=list(tags) or None,
    )


async def _require_entity(container: Container, entity_id: str):
    entity = await container.engine.get_entity(entity_id)
    if entity is None:
        raise EntityNotFoundError(entity_id)
    return entity


# ============================================================================
# CLI Group and Main Entry
# ============================================================================

@click.group()
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Path to config.yaml file")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config: Optional[str], output_json: bool, verbose: bool):
    """
    Unimem - local-first typed memory.

    Entities live in four memory layers (working, episodic, semantic,
    procedural), are retrieved by similarity and consolidated over time.
    """
    ctx.ensure_object(dict)
    try:
        cfg = load_config(Path(config) if config else None, storage_defaults=cli_storage_defaults())
    except UnimemError as e:
        raise click.ClickException(str(e)) from e

    configure_logging(
        level="DEBUG" if verbose else cfg.observability.log_level,
        json_format=cfg.observability.json_logs,
    )
    ctx.obj["config"] = cfg
    ctx.obj["json"] = output_json


# ============================================================================
# Entity Commands
# ============================================================================

@cli.command()
@click.argument("entity_type", type=click.Choice(_ENTITY_TYPES))
@click.argument("title")
@click.option("--content", "-C", default="", help="Entity body text")
@click.option("--layer", "-l", type=click.Choice(_LAYERS), help="Override the default memory layer")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--field", "-f", "fields", multiple=True, help="Type-specific field as key=value (repeatable)")
@click.option("--link", "links", multiple=True, help="Link as id:type[:relationship[:strength]] (repeatable)")
@click.pass_context
def add(ctx, entity_type, title, content, layer, tags, fields, links):
    """
    Create an entity.

    Example:
        unimem add task "Ship release" -f status=in-progress -f priority=high
    """
    try:
        draft = EntityDraft(
            type=entity_type,
            title=title,
            content=content,
            memory_layer=layer,
            tags=list(tags),
            links=[parse_link(s) for s in links],
            fields=parse_fields(fields),
        )
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e

    async def _add(container: Container):
        return await container.engine.create_entity(draft)

    entity = run_command(ctx, _add)
    _emit(ctx, entity_json(entity), f"Created {entity.type.value} {entity.id} in {entity.memory_layer.value}")


@cli.command()
@click.argument("entity_id")
@click.pass_context
def get(ctx, entity_id):
    """Show one entity."""
    async def _get(container: Container):
        return await _require_entity(container, entity_id)

    entity = run_command(ctx, _get)
    _emit(ctx, entity_json(entity), format_entity(entity))


@cli.command()
@click.argument("entity_id")
@click.option("--title", help="New title")
@click.option("--content", "-C", help="New content")
@click.option("--layer", "-l", type=click.Choice(_LAYERS), help="Move to a memory layer")
@click.option("--tag", "-t", "tags", multiple=True, help="Replace tags (repeatable)")
@click.option("--field", "-f", "fields", multiple=True, help="Type-specific field as key=value (repeatable)")
@click.pass_context
def update(ctx, entity_id, title, content, layer, tags, fields):
    """Update fields of an entity."""
    changes: Dict[str, Any] = parse_fields(fields)
    if title is not None:
        changes["title"] = title
    if content is not None:
        changes["content"] = content
    if layer:
        changes["memory_layer"] = MemoryLayerType(layer)
    if tags:
        changes["tags"] = list(tags)
    if not changes:
        raise click.UsageError("Nothing to update")

    async def _update(container: Container):
        return await container.engine.update_entity(entity_id, changes)

    entity = run_command(ctx, _update)
    _emit(ctx, entity_json(entity), f"Updated {entity.id}")


@cli.command()
@click.argument("entity_id")
@click.pass_context
def delete(ctx, entity_id):
    """Delete an entity (no-op when it does not exist)."""
    async def _delete(container: Container):
        return await container.engine.delete_entity(entity_id)

    removed = run_command(ctx, _delete)
    _emit(
        ctx,
        {"success": True, "deleted": removed, "id": entity_id},
        f"Deleted {entity_id}" if removed else f"No entity {entity_id}",
    )


@cli.command("list")
@click.option("--type", "types", multiple=True, type=click.Choice(_ENTITY_TYPES), help="Entity type (repeatable)")
@click.option("--layer", "layers", multiple=True, type=click.Choice(_LAYERS), help="Memory layer (repeatable)")
@click.option("--tag", "-t", "tags", multiple=True, help="Required tag (repeatable)")
@click.option("--limit", "-n", type=int, default=None, help="Maximum entities to show")
@click.pass_context
def list_entities(ctx, types, layers, tags, limit):
    """List entities, oldest first."""
    async def _list(container: Container):
        return await container.engine.query_entities(_filter(types, layers, tags), limit)

    entities = run_command(ctx, _list)
    _emit(ctx, [entity_json(e) for e in entities], format_entity_table(entities))


# ============================================================================
# Retrieval Commands
# ============================================================================

@cli.command()
@click.argument("query")
@click.option("--top-k", "-k", type=int, default=None, help="Number of results (default: retrieval.max_results)")
@click.option("--type", "types", multiple=True, type=click.Choice(_ENTITY_TYPES), help="Entity type (repeatable)")
@click.option("--layer", "layers", multiple=True, type=click.Choice(_LAYERS), help="Memory layer (repeatable)")
@click.option("--active", help="Id of the entity currently in focus")
@click.option("--recent", multiple=True, help="Id of a recently viewed entity (repeatable)")
@click.pass_context
def search(ctx, query, top_k, types, layers, active, recent):
    """
    Context-aware similarity search.

    Example:
        unimem search "planning meeting" --layer working -k 5
    """
    async def _search(container: Container):
        retrieval = container.retrieval
        if top_k:
            retrieval = RetrievalEngine(
                container.engine,
                dataclasses.replace(container.config.retrieval, max_results=top_k),
            )
        active_entity = await _require_entity(container, active) if active else None
        return await retrieval.retrieve(
            RetrievalContext(
                query=query,
                active_entity=active_entity,
                recent_entities=list(recent),
                entity_types=[EntityType(t) for t in types] or None,
                memory_layers=[MemoryLayerType(l) for l in layers] or None,
            )
        )

    results = run_command(ctx, _search)
    _emit(
        ctx,
        {
            "query": query,
            "count": len(results),
            "results": [
                {"score": round(r.score, 4), "similarity": r.raw_score, "entity": entity_json(r.entity)}
                for r in results
            ],
        },
        format_search_results(results),
    )


@cli.command()
@click.argument("entity_id")
@click.option("--limit", "-n", type=int, default=5, help="Maximum related entities")
@click.option("--context", "context_window", is_flag=True, help="Linked entities first, then related ones")
@click.pass_context
def related(ctx, entity_id, limit, context_window):
    """Entities similar to (or linked from) an entity."""
    async def _related(container: Container) -> List:
        entity = await _require_entity(container, entity_id)
        if context_window:
            return await container.retrieval.get_context_window(entity, window_size=limit)
        return [r.entity for r in await container.retrieval.get_related(entity, limit=limit)]

    entities = run_command(ctx, _related)
    _emit(ctx, [entity_json(e) for e in entities], format_entity_table(entities))


@cli.command()
@click.pass_context
def stats(ctx):
    """Entity counts per layer and type."""
    async def _stats(container: Container):
        return await container.engine.get_stats()

    result = run_command(ctx, _stats)
    _emit(ctx, result.to_dict(), format_stats(result))


# ============================================================================
# Maintenance Commands
# ============================================================================

@cli.command()
@click.option("--type", "types", multiple=True, type=click.Choice(_ENTITY_TYPES), help="Restrict to entity types")
@click.option("--layer", "layers", multiple=True, type=click.Choice(_LAYERS), help="Restrict to memory layers")
@click.pass_context
def consolidate(ctx, types, layers):
    """Run one consolidation pass."""
    async def _consolidate(container: Container):
        return await container.consolidation.consolidate(_filter(types, layers))

    result = run_command(ctx, _consolidate)
    text = (
        f"Processed {result.processed_count}, moved {result.consolidated_count}, "
        f"archived {result.archived_count}, failed {result.failed_count} "
        f"in {result.duration_seconds:.2f}s"
    )
    _emit(ctx, result.to_dict(), text)


# ============================================================================
# Sync Commands
# ============================================================================

def _require_peer(container: Container) -> None:
    if container.sync_manager is None or container.sync_manager.peer is None:
        raise click.ClickException("No sync server configured (replication.server_url)")


@cli.command()
@click.pass_context
def sync(ctx):
    """Push local changes and pull remote ones."""
    async def _sync(container: Container):
        _require_peer(container)
        return await container.sync_manager.sync()

    state = run_command(ctx, _sync)
    _emit(ctx, state.to_dict(), format_sync_state(state.to_dict()))
    if state.status.value == "error":
        ctx.exit(1)


@cli.command()
@click.pass_context
def conflicts(ctx):
    """List open sync conflicts."""
    async def _conflicts(container: Container):
        return [c.to_dict() for c in await container.sync_manager.get_conflicts()]

    result = run_command(ctx, _conflicts)
    _emit(ctx, result, format_conflicts(result))


@cli.command()
@click.argument("entity_id")
@click.argument("resolution", type=click.Choice([r.value for r in ConflictResolution]))
@click.option("--title", help="Merged title")
@click.option("--content", "-C", help="Merged content")
@click.option("--tag", "-t", "tags", multiple=True, help="Merged tags (repeatable)")
@click.pass_context
def resolve(ctx, entity_id, resolution, title, content, tags):
    """
    Resolve a sync conflict.

    Example:
        unimem resolve <id> merged --title "Combined" -C "Both edits"
    """
    merged: Dict[str, Any] = {}
    if title is not None:
        merged["title"] = title
    if content is not None:
        merged["content"] = content
    if tags:
        merged["tags"] = list(tags)

    async def _resolve(container: Container):
        await container.sync_manager.resolve_conflict(entity_id, ConflictResolution(resolution), merged or None)
        return container.sync_manager.state

    state = run_command(ctx, _resolve)
    _emit(ctx, {"success": True, "entityId": entity_id, "state": state.to_dict()}, f"Resolved {entity_id} ({resolution})")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
