#!/usr/bin/env python3
"""
Developer launcher for Pixlie Analyst.

Usage:
    python run.py                          # Start the API server
    python run.py --ask "Who posts most?"  # Run one objective in the terminal
    python run.py --tools                  # List the registered tools
    python run.py --setup-db               # Create data/hn_sample.db
    python run.py --test                   # Run the pytest suite
"""

import argparse
import asyncio
import json
import os
import subprocess
import sys

from pixlie_analyst.settings import settings

SAMPLE_DB = os.path.join("data", "hn_sample.db")


def _data_source_settings(cfg=None):
    """Settings pointing at the sample database when no data source is configured."""
    cfg = cfg or settings
    if cfg.data_database_url or not os.path.exists(SAMPLE_DB):
        return cfg
    print(f"ℹ️  DATA_DATABASE_URL not set, using {SAMPLE_DB}")
    return cfg.model_copy(update={"data_database_url": f"sqlite:///{SAMPLE_DB}"})


def server_env(cfg=None):
    """Environment of the server process; it rebuilds its settings from these variables."""
    env = dict(os.environ)
    url = _data_source_settings(cfg).data_database_url
    if url:
        env["DATA_DATABASE_URL"] = url
    return env


def run_api():
    print("🚀 Starting Pixlie Analyst API server...")
    print(f"   Objectives: http://localhost:{settings.api_port}{settings.api_prefix}/objectives")
    print(f"   Workspaces stored under: {os.path.abspath(settings.workspace_root)}")
    print("   Press Ctrl+C to stop")
    print()

    try:
        subprocess.run([
            sys.executable, "-m", "uvicorn",
            "pixlie_analyst.api.app:create_app",
            "--factory",
            "--host", settings.api_host,
            "--port", str(settings.api_port),
        ], check=True, env=server_env())
    except KeyboardInterrupt:
        print("\n👋 Shutting down...")
    except subprocess.CalledProcessError as e:
        print(f"❌ Failed to start server: {e}")
        sys.exit(1)


async def ask(objective_text: str, workspace: str) -> int:
    """Run one objective to completion, printing its ledger as it grows."""
    from pixlie_analyst.api.app import build_coordinator

    coordinator = build_coordinator(_data_source_settings())
    await coordinator.start()
    try:
        objective = await coordinator.create_objective(workspace, objective_text)
        print(f"🎯 Objective {objective.id} in workspace '{objective.workspace}'")

        async for event in coordinator.subscribe(objective.id):
            if event.type == "content":
                print(event.content, end="", flush=True)
            elif event.type == "step" and event.step is not None:
                step = event.step
                summary = step.results.summary if step.results else ""
                if step.status.is_final:
                    icon = "✅" if step.status.value == "completed" else "❌"
                    print(f"\n{icon} [{step.step_id}] {step.step_type.value}: {summary}")
                    for call in step.tool_calls:
                        print(f"   🔧 {call.tool_name} {json.dumps(call.parameters, default=str)}")
                prompt = objective.conversation.awaiting_user_prompt
                if prompt and step.status.value == "in_progress":
                    answer = await asyncio.to_thread(input, f"❓ {prompt}\n> ")
                    await coordinator.submit_user_response(objective.id, answer)
            elif event.type == "closed":
                break

        print()
        print(f"🏁 {objective.status.value} ({objective.terminal_reason})")
        return 0 if objective.status.value == "completed" else 1
    finally:
        await coordinator.shutdown()


def list_tools():
    from pixlie_analyst.api.app import build_registry

    descriptors = build_registry(_data_source_settings()).descriptors()
    if not descriptors:
        print("⚠️  No tools registered; configure DATA_DATABASE_URL or run --setup-db")
        return
    for descriptor in descriptors:
        print(f"🔧 {descriptor.name} [{descriptor.category.value}]")
        print(f"   {descriptor.description}")


def run_tests():
    print("🧪 Running Pixlie Analyst tests...")
    try:
        subprocess.run([sys.executable, "-m", "pytest", "tests"], check=True)
        print("✅ Tests passed")
    except subprocess.CalledProcessError:
        print("❌ Tests failed")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Pixlie Analyst - conversational data analyst over Hacker News data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py --setup-db
  python run.py --ask "Which authors posted about Rust?"
  python run.py --ask "Top stories?" --workspace research
        """
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--ask", metavar="OBJECTIVE", help="Run one objective in the terminal")
    group.add_argument("--tools", action="store_true", help="List the registered tools")
    group.add_argument("--setup-db", action="store_true", help=f"Create {SAMPLE_DB}")
    group.add_argument("--test", action="store_true", help="Run the test suite")
    parser.add_argument("--workspace", default=None, help="Workspace for --ask (default from settings)")

    args = parser.parse_args()

    if args.ask:
        sys.exit(asyncio.run(ask(args.ask, args.workspace)))
    elif args.tools:
        list_tools()
    elif args.setup_db:
        from pixlie_analyst.sample_data import create_sample_database

        counts = create_sample_database(SAMPLE_DB)
        print(f"✅ Created {SAMPLE_DB}: " + ", ".join(f"{t}={n}" for t, n in counts.items()))
    elif args.test:
        run_tests()
    else:
        run_api()


if __name__ == "__main__":
    main()
