#!/usr/bin/env python3
"""
Flow Tool — Inspect a project's conversation flow from the command line.

Usage:
    # Export the synthesized flow of the default project as JSON:
    python scripts/flow_tool.py export

    # Export a given project to a file:
    python scripts/flow_tool.py export --project 3 --output fluxo.json

    # Play a scripted conversation against the flow:
    python scripts/flow_tool.py simulate oi 1 "quero falar com atendente"

    # Create the default project if the store has none:
    python scripts/flow_tool.py seed

With no store configured (store.base_url empty) everything runs against an
in-memory store seeded with the default bus-ticket project.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _open_project(project_id: str = None):
    from config.settings import load_settings
    settings = load_settings()

    from backend.store import create_template_store
    from flows.classification import ClassificationPolicy
    from flows.reconciler import FlowReconciler
    from flows.seeds import ensure_default_project
    from flows.synthesizer import FlowSynthesizer

    store = create_template_store(settings.store)
    try:
        if project_id is None:
            project_id = (await ensure_default_project(store)).id

        reconciler = FlowReconciler(store, project_id)
        synthesizer = FlowSynthesizer(ClassificationPolicy.from_config(settings.synthesis.policy))
        graph, templates = await reconciler.load_flow(synthesizer)
    except Exception:
        await store.close()
        raise
    return store, settings, graph, templates


async def run_export(project_id: str = None, output: str = None):
    from flows.serialization import export_flow

    store, _, graph, templates = await _open_project(project_id)
    try:
        document = export_flow(graph)
    finally:
        await store.close()

    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(document)
        print(f"Exported {len(graph)} nodes ({len(templates)} templates) to {output} ✓")
    else:
        print(document)


async def run_simulation(inputs: list[str], project_id: str = None,
                         delay: float = None, traversal: str = None):
    from dataclasses import replace
    from simulation.engine import DialogueSimulator, TraversalMode

    store, settings, graph, templates = await _open_project(project_id)
    await store.close()

    config = settings.simulation
    if delay is not None:
        config = replace(config, reply_delay_seconds=delay)

    simulator = DialogueSimulator(graph, templates, config=config,
                                  traversal=TraversalMode(traversal) if traversal else None)
    transcript = await simulator.replay(inputs)
    for entry in transcript:
        speaker = "Você" if entry.role.value == "user" else "Bot"
        print(f"[{speaker}] {entry.content}")
        print()


async def run_seed():
    from config.settings import load_settings
    settings = load_settings()

    from backend.store import create_template_store
    from flows.seeds import ensure_default_project

    store = create_template_store(settings.store)
    try:
        project = await ensure_default_project(store)
        templates = await store.list_templates(project.id)
    finally:
        await store.close()
    print(f"Default project: {project.name} (id={project.id}, {len(templates)} templates) ✓")


def main():
    parser = argparse.ArgumentParser(description="Conversation flow tool")
    sub = parser.add_subparsers(dest="command", required=True)

    export = sub.add_parser("export", help="Export a project's flow as JSON")
    export.add_argument("--project", help="Project id (default project if omitted)")
    export.add_argument("--output", "-o", help="Write to this file instead of stdout")

    simulate = sub.add_parser("simulate", help="Replay user messages against a project's flow")
    simulate.add_argument("inputs", nargs="+", help="User messages, in order")
    simulate.add_argument("--project", help="Project id (default project if omitted)")
    simulate.add_argument("--delay", type=float, default=0.0, help="Reply delay in seconds")
    simulate.add_argument("--traversal", choices=["free", "graph"], help="Override traversal mode")

    sub.add_parser("seed", help="Create the default project if none exists")

    args = parser.parse_args()

    if args.command == "export":
        asyncio.run(run_export(project_id=args.project, output=args.output))
    elif args.command == "simulate":
        asyncio.run(run_simulation(args.inputs, project_id=args.project,
                                   delay=args.delay, traversal=args.traversal))
    else:
        asyncio.run(run_seed())


if __name__ == "__main__":
    main()
