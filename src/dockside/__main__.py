"""Entry point for `python -m dockside` / `dockside`.

Subcommands:
    dockside                          Run the HTTP service (default)
    dockside shell <container>        Print the detected shell
    dockside exec <container> -- cmd  Run a one-shot command, exit with its code
    dockside stats <container>        Print one resource usage sample as JSON
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys


def _run() -> None:
    from dockside.app import DocksideApp

    app = DocksideApp()
    asyncio.run(app.run())


async def _shell(container_id: str) -> int:
    from dockside.app import DocksideApp
    from dockside.errors import EngineError

    async with DocksideApp() as app:
        try:
            shell = await app.manager.find_shell(container_id)
        except EngineError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
    print(shell)
    return 0


async def _exec(container_id: str, cmd: list[str]) -> int:
    from dockside.app import DocksideApp
    from dockside.errors import EngineError

    async with DocksideApp() as app:
        try:
            result = await app.manager.command(container_id, cmd)
        except EngineError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
    if result.stdout:
        print(result.stdout)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    return result.exit_code


async def _stats(container_id: str) -> int:
    from dockside.app import DocksideApp
    from dockside.errors import EngineError
    from dockside.stats import fetch_stats

    async with DocksideApp() as app:
        try:
            stats = await fetch_stats(app.engine, container_id)
        except EngineError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
    print(json.dumps(stats.to_dict(), indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="dockside",
        description="Exec sessions, logs and event streams for container engines",
    )
    sub = parser.add_subparsers(dest="command")
    shell = sub.add_parser("shell", help="Detect the shell available in a container")
    shell.add_argument("container")
    run = sub.add_parser("exec", help="Run a command in a container")
    run.add_argument("container")
    run.add_argument("cmd", nargs=argparse.REMAINDER, help="Command after --")
    stats = sub.add_parser("stats", help="Show CPU, memory, network and disk usage")
    stats.add_argument("container")

    args = parser.parse_args()

    match args.command:
        case "shell":
            sys.exit(asyncio.run(_shell(args.container)))
        case "stats":
            sys.exit(asyncio.run(_stats(args.container)))
        case "exec":
            cmd = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
            if not cmd:
                parser.error("exec needs a command, e.g. dockside exec web -- ls /")
            sys.exit(asyncio.run(_exec(args.container, cmd)))
        case _:
            _run()


if __name__ == "__main__":
    main()
