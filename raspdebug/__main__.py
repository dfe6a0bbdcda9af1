"""Raspberry debugger command line.

Usage::

    python -m raspdebug deploy Blinkie/Blinkie.csproj [--run] [--publish]
    python -m raspdebug connections list
    python -m raspdebug connections add raspberrypi.local --user pi --default
    python -m raspdebug probe [pi@raspberrypi.local]
    python -m raspdebug check-catalog [--download] [PATH]
    python -m raspdebug check-catalog --refresh verified-catalog.json
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from raspdebug import config
from raspdebug.catalog import architecture_label
from raspdebug.connection import ConnectionInfo, ConnectionManager
from raspdebug.errors import RaspDebugError
from raspdebug.store import ConnectionStore, ProjectSettingsStore


def _pick_connection(store: ConnectionStore, name: str | None) -> ConnectionInfo:
    info = store.find(name) if name else store.get_default()
    if info is None:
        raise SystemExit(f"No connection [{name or 'default'}]; add one with 'connections add'.")
    return info


# ── Commands ──────────────────────────────────────────────────────


def cmd_deploy(args: argparse.Namespace) -> int:
    from raspdebug.deploy import DeploymentPipeline, select_connection
    from raspdebug.project import ProjectProperties

    project_path = Path(args.project).resolve()
    project = ProjectProperties.from_project_file(project_path, configuration=args.configuration)
    store = ConnectionStore()

    if args.connection:
        info = _pick_connection(store, args.connection)
        target_group = args.group or config.DEFAULT_TARGET_GROUP
    else:
        solution_dir = Path(args.solution_dir).resolve() if args.solution_dir else project_path.parent.parent
        settings_store = ProjectSettingsStore(solution_dir)
        try:
            project_id = project_path.relative_to(solution_dir).as_posix()
        except ValueError:
            project_id = project_path.name
        settings = settings_store.get_or_create(project_id)
        settings_store.save()
        info = select_connection(settings, store)
        target_group = args.group or settings.target_group

    launch_json = args.launch_json or (project_path.parent / "obj" / "raspberry.launch.json")
    pipeline = DeploymentPipeline(
        connections=ConnectionManager(store=store, confirm_reauthorize=_confirm_reauthorize),
    )
    result = asyncio.run(pipeline.deploy(
        project,
        info,
        debug=not args.run,
        publish=args.publish,
        allow_unsupported_board=args.allow_unsupported_board,
        target_group=target_group,
        launch_json_path=None if args.run else launch_json,
    ))

    for step in result.steps:
        print(f"  {step.status:<8} {step.name:<18} {step.detail}")
    if not result.success:
        print(f"\nDeployment failed: {result.error}")
        return 1
    if result.launch_config is not None:
        print(f"\nLaunch configuration: {launch_json}")
    if result.pid is not None:
        print(f"\nProgram started (pid {result.pid})")
    if result.browser_uri:
        print(f"Browse to: {result.browser_uri}")
    return 0


def _confirm_reauthorize(info: ConnectionInfo) -> bool:
    if not sys.stdin.isatty():
        return True
    answer = input(f"SSH key for [{info.name}] was rejected. Reauthorize it using the password? [Y/n] ")
    return answer.strip().lower() in ("", "y", "yes")


def cmd_connections(args: argparse.Namespace) -> int:
    store = ConnectionStore()

    if args.action == "list":
        connections = store.read()
        if not connections:
            print("No connections.")
        for info in connections:
            marker = "*" if info.is_default else " "
            print(f"{marker} {info.name:<32} port={info.port:<5} auth={info.authentication}")
        return 0

    if args.action == "add":
        info = ConnectionInfo(
            host=args.host,
            port=args.port,
            user=args.user,
            password=args.password,
            is_default=args.default,
        )
        try:
            store.add(info)
        except ValueError as exc:
            print(f"ERROR: {exc}")
            return 1
        print(f"Added [{info.name}]")
        return 0

    if args.action == "remove":
        if not store.remove(args.name):
            print(f"ERROR: No connection [{args.name}]")
            return 1
        print(f"Removed [{args.name}]")
        return 0

    return 2


def cmd_probe(args: argparse.Namespace) -> int:
    from raspdebug.probe import DeviceProbe

    store = ConnectionStore()
    info = _pick_connection(store, args.name)

    async def _probe():
        session = await ConnectionManager(store=store).connect(info)
        try:
            return await DeviceProbe().probe(session)
        finally:
            await session.close()

    status = asyncio.run(_probe())
    print(f"Board:        {status.model or 'unknown'} (revision {status.revision or '?'})")
    print(f"Supported:    {status.board_supported}")
    print(f"Processor:    {status.processor} ({architecture_label(status.architecture)})")
    print(f"unzip:        {status.has_unzip}")
    print(f"Debugger:     {status.has_debugger}")
    print("SDKs:         " + (", ".join(str(c) for c in status.installed_components) or "none"))
    return 0


def cmd_check_catalog(args: argparse.Namespace) -> int:
    from raspdebug.checker import run_checker, run_refresh

    if args.refresh:
        return run_refresh(args.refresh, args.path)
    return run_checker(args.path, download=args.download)


# ── Entry point ───────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m raspdebug",
        description="Deploy and debug .NET programs on a Raspberry Pi",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Deploy a project to a Raspberry")
    deploy.add_argument("project", help="Path to the .csproj file")
    deploy.add_argument("--connection", metavar="USER@HOST", help="Target connection (default: project setting)")
    deploy.add_argument("--configuration", default="Debug")
    deploy.add_argument("--solution-dir", metavar="PATH", help="Folder holding the solution (default: the project folder's parent)")
    deploy.add_argument("--run", action="store_true", help="Start without debugging")
    deploy.add_argument("--publish", action="store_true", help="Run 'dotnet publish' first")
    deploy.add_argument("--group", help=f"Linux group to run the program under (default: {config.DEFAULT_TARGET_GROUP})")
    deploy.add_argument("--allow-unsupported-board", action="store_true")
    deploy.add_argument("--launch-json", metavar="PATH", help="Where to write the debug launch configuration")
    deploy.set_defaults(func=cmd_deploy)

    conns = sub.add_parser("connections", help="Manage Raspberry connections")
    conn_sub = conns.add_subparsers(dest="action", required=True)
    conn_sub.add_parser("list", help="List connections")
    add = conn_sub.add_parser("add", help="Add a connection")
    add.add_argument("host")
    add.add_argument("--user", default="pi")
    add.add_argument("--port", type=int, default=22)
    add.add_argument("--password", default="raspberry")
    add.add_argument("--default", action="store_true", help="Make this the default connection")
    remove = conn_sub.add_parser("remove", help="Remove a connection")
    remove.add_argument("name", metavar="USER@HOST")
    conns.set_defaults(func=cmd_connections)

    probe = sub.add_parser("probe", help="Show a Raspberry's status")
    probe.add_argument("name", nargs="?", metavar="USER@HOST", help="Connection (default: the default one)")
    probe.set_defaults(func=cmd_probe)

    check = sub.add_parser("check-catalog", help="Validate the component catalog")
    check.add_argument("path", nargs="?", help="Catalog file (default: the embedded catalog)")
    check.add_argument("--download", action="store_true", help="Also download and verify every usable item")
    check.add_argument("--refresh", metavar="OUTPUT",
                       help="Write a copy with the SDK checksums Microsoft publishes")
    check.set_defaults(func=cmd_check_catalog)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    config.ensure_settings_dirs()
    try:
        return args.func(args)
    except RaspDebugError as exc:
        print(f"ERROR: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\n\nCancelled.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
