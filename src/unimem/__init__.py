"""
Unimem - Local-first Typed Memory Engine
========================================

A local-first store of typed knowledge entities (daily notes, people,
companies, projects, tasks, areas, resources), each living in one of four
cognitive memory layers.

Main Packages:
    - core: entity model, storage backends, embedding providers, the memory
      engine, consolidation and retrieval
    - events: synchronous publish/subscribe event bus
    - sync: replication against a remote peer with conflict tracking
    - cli: command-line interface

Quick Start:
    from unimem.core import EntityDraft, EntityType, build_container, load_config

    container = build_container(load_config())
    await container.initialize()
    note = await container.engine.create_entity(
        EntityDraft(type=EntityType.DAILY_NOTE, title="Monday", content="Standup notes")
    )
    results = await container.engine.search_similar("standup")

Version: 1.0.0
"""

__version__ = "1.0.0"
