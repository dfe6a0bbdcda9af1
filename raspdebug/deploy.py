"""Deployment pipeline.

Runs a project on a Raspberry:

  1. Check the project can run on a Raspberry at all
  2. Connect (creating SSH keys on first use)
  3. Probe the device: architecture, board, installed SDKs
  4. Install unzip, the matching .NET SDK and the debugger when missing
  5. Publish the project locally (optional)
  6. Transfer the published program to /home/<user>/vsdbg/<assembly>
  7. Debug mode: build the debug adapter launch configuration
     Run mode: start the program in the background and report its PID

Every step reports through the ProgressCoordinator and is recorded as a
DeployStep so hosts can follow along with ``on_progress`` callbacks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable

import asyncssh

from raspdebug import config
from raspdebug.catalog import Architecture, ComponentKind, ComponentResolver
from raspdebug.connection import ConnectionInfo, ConnectionManager, SSHConnection
from raspdebug.errors import (
    ConnectionFailure,
    DeploymentError,
    DeploymentFailure,
    RaspDebugError,
    RemoteConnectionError,
    UnsupportedBoardError,
)
from raspdebug.installer import Installer
from raspdebug.probe import DeviceProbe, Status
from raspdebug.progress import ProgressCoordinator
from raspdebug.project import ProjectProperties
from raspdebug.store import ConnectionStore, ProjectSettings

logger = logging.getLogger(__name__)

LISTEN_TIMEOUT = 30.0
LISTEN_POLL_INTERVAL = 0.5

_ENV_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass
class DeployStep:
    name: str
    status: str = "pending"  # pending, running, done, failed, skipped
    detail: str = ""


@dataclass
class DeployResult:
    success: bool = False
    steps: list[DeployStep] = field(default_factory=list)
    error: str = ""
    error_type: str = ""
    status: Status | None = None
    launch_config: dict | None = None
    pid: int | None = None
    browser_uri: str | None = None


# ── Helpers ───────────────────────────────────────────────────────


def select_connection(settings: ProjectSettings, store: ConnectionStore) -> ConnectionInfo:
    """The project's target connection, or the default one."""
    if settings.target_connection_name:
        info = store.find(settings.target_connection_name)
        if info is None:
            raise DeploymentError(
                f"Connection [{settings.target_connection_name}] does not exist.",
                DeploymentFailure.NO_CONNECTION,
            )
        return info

    info = store.get_default()
    if info is None:
        raise DeploymentError(
            "No default Raspberry connection is configured.",
            DeploymentFailure.NO_CONNECTION,
        )
    return info


def build_environment(project: ProjectProperties, status: Status) -> dict[str, str]:
    """Environment for the program: project variables plus the .NET setup."""
    root = config.REMOTE_DOTNET_FOLDER
    env = dict(project.environment_variables)
    env[config.DOTNET_ROOT_VARIABLE] = root
    env["PATH"] = f"{status.path}:{root}" if status.path else root
    if project.is_web_server:
        env[config.WEB_URLS_VARIABLE] = f"http://0.0.0.0:{project.web_port}"
    return env


def build_launch_config(
    project: ProjectProperties,
    info: ConnectionInfo,
    environment: dict[str, str],
) -> dict:
    """Debug adapter launch configuration running vsdbg over SSH.

    The debugger starts the program as ``dotnet <program.dll> <args>``.
    """
    if not info.private_key_path:
        raise DeploymentError(
            f"[{info.name}] has no SSH key; connect once before debugging.",
            DeploymentFailure.LAUNCH_FAILURE,
        )

    folder = config.remote_program_folder(info.user, project.assembly_name)
    port = f"-p {info.port} " if info.port != 22 else ""
    adapter_args = (
        f'-i "{info.private_key_path}" -o "StrictHostKeyChecking no" {port}'
        f"{info.user}@{info.host} {config.REMOTE_DEBUGGER_PATH} --interpreter=vscode"
    )
    return {
        "version": "0.2.1",
        "adapter": shutil.which("ssh") or "ssh",
        "adapterArgs": adapter_args,
        "configurations": [
            {
                "name": "Debug on Raspberry",
                "type": "coreclr",
                "request": "launch",
                "program": config.REMOTE_DOTNET_COMMAND,
                "args": [f"{folder}/{project.assembly_name}.dll", *project.command_line_args],
                "cwd": folder,
                "stopAtEntry": False,
                "console": "internalConsole",
                "env": environment,
            }
        ],
    }


def write_launch_config(launch_config: dict, path: str | Path) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(launch_config, indent=2), encoding="utf-8")
    except OSError as exc:
        raise DeploymentError(
            f"Cannot write the launch configuration [{path}]: {exc}",
            DeploymentFailure.LAUNCH_FAILURE,
        ) from exc
    return path


async def publish_project(project: ProjectProperties, architecture: Architecture) -> Path:
    """Run ``dotnet publish`` for the device's runtime; returns the publish folder."""
    output = project.publish_folder(architecture)
    cmd = ["dotnet", "publish", "--configuration", project.configuration]
    if project.framework:
        cmd += ["--framework", project.framework]
    cmd += [
        "--runtime", project.runtime_for(architecture),
        "--no-self-contained",
        "--output", str(output),
        str(project.project_path),
    ]
    logger.info("Publishing: %s", " ".join(cmd))

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise DeploymentError(
            "The [dotnet] command is not installed on this workstation.",
            DeploymentFailure.PUBLISH_FAILURE,
        ) from exc

    stdout_bytes, stderr_bytes = await proc.communicate()
    if proc.returncode != 0:
        output_text = (stdout_bytes + stderr_bytes).decode("utf-8", errors="replace")
        raise DeploymentError(
            f"[dotnet publish] failed for [{project.name}] (rc={proc.returncode}): "
            f"{output_text[-500:]}",
            DeploymentFailure.PUBLISH_FAILURE,
        )
    return output


async def transfer_program(
    session: SSHConnection,
    project: ProjectProperties,
    info: ConnectionInfo,
    publish_folder: Path,
) -> str:
    """Zip the published files, replace the remote program folder and unzip there."""
    if not publish_folder.is_dir():
        raise DeploymentError(
            f"Publish folder [{publish_folder}] does not exist; publish the project first.",
            DeploymentFailure.TRANSFER_FAILURE,
        )

    root = config.remote_debug_binary_root(info.user)
    folder = config.remote_program_folder(info.user, project.assembly_name)
    remote_zip = f"/tmp/{project.assembly_name}.zip"

    with tempfile.TemporaryDirectory(prefix="raspdebug-") as tmp:
        try:
            archive = await asyncio.to_thread(
                shutil.make_archive, str(Path(tmp) / "program"), "zip", str(publish_folder)
            )
        except OSError as exc:
            raise DeploymentError(
                f"Cannot package [{publish_folder}]: {exc}",
                DeploymentFailure.TRANSFER_FAILURE,
            ) from exc
        logger.info("[%s]: Uploading program to: [%s]", info.name, folder)
        try:
            await session.upload(archive, remote_zip)
        except (RemoteConnectionError, OSError, asyncssh.Error) as exc:
            raise DeploymentError(
                f"[{info.name}]: Cannot upload the program: {exc}",
                DeploymentFailure.TRANSFER_FAILURE,
            ) from exc

    script = (
        f"mkdir -p {root} || exit 1\n"
        f"rm -rf {folder} || exit 1\n"
        f"unzip -q {remote_zip} -d {folder} || exit 1\n"
        f"rm -f {remote_zip}\n"
        f"chmod 770 {folder}/{project.assembly_name} || exit 1\n"
        f"exit 0\n"
    )
    result = await session.run(script)
    if result.returncode != 0:
        raise DeploymentError(
            f"[{info.name}]: Cannot install the program: {result.all_text}",
            DeploymentFailure.TRANSFER_FAILURE,
        )
    return folder


async def ensure_group_member(session: SSHConnection, user: str, group: str) -> bool:
    """Add ``user`` to ``group``; False when the group does not exist."""
    script = (
        f"if getent group {shlex.quote(group)} > /dev/null ; then\n"
        f"    usermod -aG {shlex.quote(group)} {shlex.quote(user)} && echo yes\n"
        f"else\n"
        f"    echo no\n"
        f"fi\n"
    )
    result = await session.sudo(script)
    return result.returncode == 0 and result.stdout.strip() == "yes"


async def start_program(
    session: SSHConnection,
    project: ProjectProperties,
    info: ConnectionInfo,
    environment: dict[str, str],
    target_group: str | None = config.DEFAULT_TARGET_GROUP,
) -> int:
    """Start the program detached from the session and return its PID."""
    folder = config.remote_program_folder(info.user, project.assembly_name)
    names = []
    for name in environment:
        if _ENV_NAME.fullmatch(name):
            names.append(name)
        else:
            logger.warning("[%s]: Skipping invalid environment variable name [%s]", info.name, name)
    variables = " ".join(f"{k}={shlex.quote(environment[k])}" for k in names)
    args = " ".join(shlex.quote(a) for a in project.command_line_args)
    command = (
        f"cd {folder} && nohup env {variables} {config.REMOTE_DOTNET_COMMAND} "
        f"{folder}/{project.assembly_name}.dll {args} > {folder}/program.log 2>&1 & echo $!"
    )

    if target_group and await ensure_group_member(session, info.user, target_group):
        command = f"sg {shlex.quote(target_group)} -c {shlex.quote(command)}"
    elif target_group:
        logger.warning("[%s]: Group [%s] does not exist; starting without it", info.name, target_group)

    result = await session.run(command)
    try:
        return int(result.stdout.strip().splitlines()[-1])
    except (IndexError, ValueError):
        raise DeploymentError(
            f"[{info.name}]: Cannot start [{project.assembly_name}]: {result.all_text}",
            DeploymentFailure.LAUNCH_FAILURE,
        ) from None


async def wait_for_listener(
    session: SSHConnection,
    port: int,
    timeout: float = LISTEN_TIMEOUT,
    poll_interval: float = LISTEN_POLL_INTERVAL,
) -> bool:
    """Poll until something listens on ``port``; False on timeout."""
    script = f"lsof -i -P -n | grep --quiet 'TCP \\*:{port} (LISTEN)'"
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await session.sudo(script)
        if result.returncode == 0:
            return True
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(poll_interval)


# ── Pipeline ──────────────────────────────────────────────────────


class DeploymentPipeline:
    """Deploys and starts projects on a Raspberry."""

    def __init__(
        self,
        connections: ConnectionManager | None = None,
        probe: DeviceProbe | None = None,
        resolver: ComponentResolver | None = None,
        installer: Installer | None = None,
        progress: ProgressCoordinator | None = None,
    ) -> None:
        self.progress = progress or ProgressCoordinator()
        self.connections = connections or ConnectionManager(store=ConnectionStore())
        self.resolver = resolver or ComponentResolver()
        self.probe = probe or DeviceProbe(self.resolver.catalog)
        self.installer = installer or Installer()
        # Nested operations must share one surface
        for collaborator in (self.connections, self.installer):
            if hasattr(collaborator, "progress"):
                collaborator.progress = self.progress
        self._progress_callbacks: list[Callable[[str, DeployStep], None]] = []

    def on_progress(self, callback: Callable[[str, DeployStep], None]) -> None:
        """Register a callback for deployment step updates."""
        self._progress_callbacks.append(callback)

    async def deploy(
        self,
        project: ProjectProperties,
        info: ConnectionInfo,
        debug: bool = True,
        publish: bool = False,
        allow_unsupported_board: bool = False,
        target_group: str | None = config.DEFAULT_TARGET_GROUP,
        launch_json_path: str | Path | None = None,
    ) -> DeployResult:
        """Run the full deployment and report the outcome."""
        result = DeployResult()
        steps = [
            DeployStep("check_project", detail=f"Checking [{project.name}]"),
            DeployStep("connect", detail=f"Connecting to [{info.name}]"),
            DeployStep("probe", detail="Checking Raspberry status"),
            DeployStep("install_sdk", detail=f"Installing .NET SDK [{project.sdk_version}]"),
            DeployStep("install_debugger", detail="Installing the debugger"),
            DeployStep("publish", detail=f"Publishing [{project.name}]"),
            DeployStep("transfer", detail="Uploading the program"),
            DeployStep("launch", detail="Preparing the debugger" if debug else "Starting the program"),
        ]
        result.steps = steps
        session: SSHConnection | None = None

        try:
            async with self.progress.operation(f"Deploying [{project.name}]..."):
                async with self._step(project, steps[0]):
                    reason = project.incompatibility_reason()
                    if reason:
                        raise DeploymentError(reason, DeploymentFailure.NOT_COMPATIBLE)

                async with self._step(project, steps[1]):
                    session = await self.connections.connect(info)

                async with self._step(project, steps[2]):
                    status = await self.probe.probe(session)
                    architecture = status.require_architecture()
                    if not status.board_supported:
                        if not allow_unsupported_board:
                            raise UnsupportedBoardError(status.model)
                        logger.warning("[%s]: Continuing on unsupported board [%s]", info.name, status.model)
                result.status = status

                async with self._step(project, steps[3]):
                    status = await self.installer.ensure_unzip(session, status)
                    installed = status.installed_sdk(project.sdk_version)
                    if installed is not None:
                        logger.info("[%s]: SDK [%s] is already installed", info.name, installed.name)
                        steps[3].detail = f"SDK [{installed.name}]"
                    else:
                        sdk = self.resolver.resolve(project.sdk_version, architecture)
                        status = (await self.installer.ensure_installed(session, status, sdk)).status
                        steps[3].detail = f"SDK [{sdk.name}]"
                result.status = status

                if debug:
                    async with self._step(project, steps[4]):
                        if not status.has_debugger:
                            debugger = self.resolver.resolve(None, architecture, ComponentKind.DEBUGGER)
                            status = (await self.installer.ensure_installed(session, status, debugger)).status
                    result.status = status
                else:
                    self._update_step(project, steps[4], "skipped")

                if publish:
                    async with self._step(project, steps[5]):
                        publish_folder = await publish_project(project, architecture)
                else:
                    publish_folder = project.publish_folder(architecture)
                    self._update_step(project, steps[5], "skipped")

                async with self._step(project, steps[6]):
                    await transfer_program(session, project, info, publish_folder)

                async with self._step(project, steps[7]):
                    environment = build_environment(project, status)
                    if debug:
                        result.launch_config = build_launch_config(project, info, environment)
                        if launch_json_path:
                            write_launch_config(result.launch_config, launch_json_path)
                    else:
                        result.pid = await start_program(
                            session, project, info, environment, target_group
                        )
                    if project.is_web_server and project.launch_browser:
                        result.browser_uri = await self._browser_uri(session, project, info, debug)

            result.success = True

        except RaspDebugError as e:
            self._report_failure(project, info, result, e)
        except asyncssh.Error as e:
            error = RemoteConnectionError(
                info.name, str(e) or type(e).__name__, ConnectionFailure.UNREACHABLE
            )
            error.__cause__ = e
            self._report_failure(project, info, result, error)
        finally:
            if session is not None:
                await session.close()
            await self.installer.aclose()

        return result

    async def _browser_uri(
        self,
        session: SSHConnection,
        project: ProjectProperties,
        info: ConnectionInfo,
        debug: bool,
    ) -> str | None:
        uri = f"http://{info.host}:{project.web_port}{project.browser_uri}"
        if debug:
            # The debugger starts the program later; the host polls itself.
            return uri
        async with self.progress.operation("Waiting for the web server..."):
            if await wait_for_listener(session, project.web_port):
                return uri
        logger.warning("[%s]: Nothing is listening on port %d", info.name, project.web_port)
        return None

    # ── Step tracking ──────────────────────────────────────────────

    def _report_failure(
        self,
        project: ProjectProperties,
        info: ConnectionInfo,
        result: DeployResult,
        error: RaspDebugError,
    ) -> None:
        result.error = str(error)
        result.error_type = type(error).__name__
        logger.exception("Deployment of [%s] to [%s] failed", project.name, info.name)
        for step in result.steps:
            if step.status == "running":
                self._update_step(project, step, "failed", str(error))
            elif step.status == "pending":
                step.status = "skipped"

    @asynccontextmanager
    async def _step(self, project: ProjectProperties, step: DeployStep) -> AsyncIterator[None]:
        self._update_step(project, step, "running")
        async with self.progress.operation(f"{step.detail}..."):
            yield
        self._update_step(project, step, "done")

    def _update_step(
        self,
        project: ProjectProperties,
        step: DeployStep,
        status: str,
        detail: str = "",
    ) -> None:
        """Update step status and notify callbacks."""
        step.status = status
        if detail:
            step.detail = detail
        for cb in self._progress_callbacks:
            try:
                cb(project.name, step)
            except Exception:
                logger.exception("Error in deploy progress callback")
