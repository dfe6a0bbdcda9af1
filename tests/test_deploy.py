"""Tests for the deployment pipeline and its helpers."""

from __future__ import annotations

import asyncssh
import httpx
import pytest

from raspdebug.catalog import Architecture
from raspdebug.connection import ConnectionInfo, MockSSHConnection, SSHResult
from raspdebug.probe import Status
from raspdebug.project import ProjectProperties


class _FakeConnections:
    def __init__(self, session):
        self.session = session
        self.calls = 0

    async def connect(self, info):
        self.calls += 1
        return self.session


class _DroppingSession(MockSSHConnection):
    """Loses the connection on the first command starting with ``drop_on``."""

    def __init__(self, responses, drop_on):
        super().__init__(responses, default=SSHResult(returncode=0))
        self.drop_on = drop_on

    async def run(self, command):
        if command.startswith(self.drop_on):
            raise asyncssh.ConnectionLost("Connection lost")
        return await super().run(command)


def _no_downloads(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected download: {request.url}")


def _project(tmp_path, **kwargs):
    defaults = dict(
        name="Blinkie",
        project_path=tmp_path / "Blinkie" / "Blinkie.csproj",
        framework="net6.0",
        sdk_version="6.0",
        output_folder=tmp_path / "Blinkie" / "bin" / "Debug" / "net6.0",
        assembly_name="Blinkie",
        command_line_args=("--pin", "17"),
        environment_variables={"LOG_LEVEL": "debug"},
    )
    defaults.update(kwargs)
    project = ProjectProperties(**defaults)
    for arch in (Architecture.ARM32, Architecture.ARM64):
        folder = project.publish_folder(arch)
        folder.mkdir(parents=True, exist_ok=True)
        (folder / "Blinkie.dll").write_bytes(b"MZ")
        (folder / "Blinkie").write_bytes(b"\x7fELF")
    return project


def _info(tmp_path):
    key = tmp_path / "pi@10.0.0.5"
    key.write_text("PRIVATE")
    return ConnectionInfo(host="10.0.0.5", private_key_path=str(key), public_key_path=f"{key}.pub")


def _pipeline(session):
    from raspdebug.deploy import DeploymentPipeline
    from raspdebug.installer import Installer

    client = httpx.AsyncClient(transport=httpx.MockTransport(_no_downloads))
    return DeploymentPipeline(
        connections=_FakeConnections(session),
        installer=Installer(client=client, retry_delay=0),
    )


# ── Helpers ───────────────────────────────────────────────────────


class TestSelectConnection:
    def test_named_connection(self, tmp_path):
        from raspdebug.deploy import select_connection
        from raspdebug.store import ConnectionStore, ProjectSettings

        store = ConnectionStore(tmp_path / "c.json")
        store.add(ConnectionInfo(host="a"))
        store.add(ConnectionInfo(host="lab"))

        info = select_connection(ProjectSettings(target_connection_name="PI@LAB"), store)
        assert info.host == "lab"

    def test_default_connection(self, tmp_path):
        from raspdebug.deploy import select_connection
        from raspdebug.store import ConnectionStore, ProjectSettings

        store = ConnectionStore(tmp_path / "c.json")
        store.add(ConnectionInfo(host="a"))

        assert select_connection(ProjectSettings(), store).host == "a"

    @pytest.mark.parametrize("name", [None, "pi@missing"])
    def test_no_connection(self, tmp_path, name):
        from raspdebug.deploy import select_connection
        from raspdebug.errors import DeploymentError, DeploymentFailure
        from raspdebug.store import ConnectionStore, ProjectSettings

        store = ConnectionStore(tmp_path / "c.json")
        with pytest.raises(DeploymentError) as exc:
            select_connection(ProjectSettings(target_connection_name=name), store)
        assert exc.value.kind == DeploymentFailure.NO_CONNECTION


class TestLaunchSettings:
    def test_environment(self, tmp_path):
        from raspdebug.deploy import build_environment

        env = build_environment(_project(tmp_path), Status(path="/usr/bin:/bin"))

        assert env == {
            "LOG_LEVEL": "debug",
            "DOTNET_ROOT": "/lib/dotnet",
            "PATH": "/usr/bin:/bin:/lib/dotnet",
        }

    def test_web_environment(self, tmp_path):
        from raspdebug.deploy import build_environment

        project = _project(tmp_path, is_web_server=True, web_port=5080)
        env = build_environment(project, Status(path=""))

        assert env["ASPNETCORE_URLS"] == "http://0.0.0.0:5080"
        assert env["PATH"] == "/lib/dotnet"

    def test_launch_config(self, tmp_path):
        from raspdebug.deploy import build_launch_config

        info = _info(tmp_path)
        config = build_launch_config(_project(tmp_path), info, {"A": "1"})

        assert config["version"] == "0.2.1"
        assert config["adapterArgs"] == (
            f'-i "{info.private_key_path}" -o "StrictHostKeyChecking no" '
            "pi@10.0.0.5 /lib/dotnet/vsdbg/vsdbg --interpreter=vscode"
        )
        launch = config["configurations"][0]
        assert launch["name"] == "Debug on Raspberry"
        assert launch["type"] == "coreclr"
        assert launch["program"] == "/lib/dotnet/dotnet"
        assert launch["args"] == ["/home/pi/vsdbg/Blinkie/Blinkie.dll", "--pin", "17"]
        assert launch["cwd"] == "/home/pi/vsdbg/Blinkie"
        assert launch["env"] == {"A": "1"}

    def test_launch_config_needs_key(self, tmp_path):
        from raspdebug.deploy import build_launch_config
        from raspdebug.errors import DeploymentError, DeploymentFailure

        with pytest.raises(DeploymentError) as exc:
            build_launch_config(_project(tmp_path), ConnectionInfo(host="x"), {})
        assert exc.value.kind == DeploymentFailure.LAUNCH_FAILURE


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_arguments(self, tmp_path, monkeypatch):
        from raspdebug import deploy

        seen = []

        class _Proc:
            returncode = 0

            async def communicate(self):
                return b"ok", b""

        async def fake_exec(*cmd, **kwargs):
            seen.append(list(cmd))
            return _Proc()

        monkeypatch.setattr(deploy.asyncio, "create_subprocess_exec", fake_exec)
        project = _project(tmp_path)

        folder = await deploy.publish_project(project, Architecture.ARM64)

        assert folder == project.publish_folder(Architecture.ARM64)
        cmd = seen[0]
        assert cmd[:4] == ["dotnet", "publish", "--configuration", "Debug"]
        assert cmd[cmd.index("--runtime") + 1] == "linux-arm64"
        assert cmd[cmd.index("--framework") + 1] == "net6.0"
        assert "--no-self-contained" in cmd

    @pytest.mark.asyncio
    async def test_publish_failure(self, tmp_path, monkeypatch):
        from raspdebug import deploy
        from raspdebug.errors import DeploymentError, DeploymentFailure

        class _Proc:
            returncode = 1

            async def communicate(self):
                return b"", b"error CS1002: ; expected"

        async def fake_exec(*cmd, **kwargs):
            return _Proc()

        monkeypatch.setattr(deploy.asyncio, "create_subprocess_exec", fake_exec)

        with pytest.raises(DeploymentError) as exc:
            await deploy.publish_project(_project(tmp_path), Architecture.ARM32)
        assert exc.value.kind == DeploymentFailure.PUBLISH_FAILURE
        assert "CS1002" in str(exc.value)


class TestRemoteHelpers:
    @pytest.mark.asyncio
    async def test_transfer_replaces_program_folder(self, tmp_path):
        from raspdebug.deploy import transfer_program

        mock = MockSSHConnection(default=SSHResult(returncode=0))
        project = _project(tmp_path)

        folder = await transfer_program(mock, project, _info(tmp_path), project.publish_folder(Architecture.ARM64))

        assert folder == "/home/pi/vsdbg/Blinkie"
        assert mock.uploads[0][1] == "/tmp/Blinkie.zip"
        script = mock.commands[-1]
        assert "rm -rf /home/pi/vsdbg/Blinkie" in script
        assert "unzip -q /tmp/Blinkie.zip -d /home/pi/vsdbg/Blinkie" in script
        assert "chmod 770 /home/pi/vsdbg/Blinkie/Blinkie" in script

    @pytest.mark.asyncio
    async def test_transfer_failure(self, tmp_path):
        from raspdebug.deploy import transfer_program
        from raspdebug.errors import DeploymentError, DeploymentFailure

        project = _project(tmp_path)
        with pytest.raises(DeploymentError) as exc:
            await transfer_program(MockSSHConnection(), project, _info(tmp_path),
                                   project.publish_folder(Architecture.ARM64))
        assert exc.value.kind == DeploymentFailure.TRANSFER_FAILURE

    @pytest.mark.asyncio
    async def test_start_program_skips_invalid_variable_names(self, tmp_path):
        from raspdebug.deploy import start_program

        mock = MockSSHConnection({"cd /home/pi/vsdbg/Blinkie": SSHResult(stdout="77\n")})
        environment = {"LOG_LEVEL": "debug", "BAD-NAME": "x", "1ST": "y", "A B": "z", "_OK2": "it's"}

        pid = await start_program(mock, _project(tmp_path), _info(tmp_path), environment, target_group=None)

        assert pid == 77
        command = mock.commands[-1]
        assert "LOG_LEVEL=debug" in command
        assert "_OK2='it'\"'\"'s'" in command
        assert "BAD-NAME" not in command
        assert "1ST" not in command
        assert "A B" not in command

    @pytest.mark.asyncio
    async def test_wait_for_listener(self):
        from raspdebug.deploy import wait_for_listener

        listening = MockSSHConnection({"lsof -i -P -n": SSHResult(returncode=0)})
        assert await wait_for_listener(listening, 5000)
        assert listening.commands == ["lsof -i -P -n | grep --quiet 'TCP \\*:5000 (LISTEN)'"]

        idle = MockSSHConnection()
        assert not await wait_for_listener(idle, 5000, timeout=0.05, poll_interval=0.01)
        assert len(idle.commands) >= 2


# ── Pipeline ──────────────────────────────────────────────────────


class TestDeploymentPipeline:
    @pytest.mark.asyncio
    async def test_debug_deploy_on_provisioned_pi(self, tmp_path, probe_responses):
        responses = probe_responses(sdks="6.0.417", has_debugger=True)
        session = MockSSHConnection(responses, default=SSHResult(returncode=0))
        pipeline = _pipeline(session)
        launch_json = tmp_path / "launch.json"

        result = await pipeline.deploy(_project(tmp_path), _info(tmp_path), launch_json_path=launch_json)

        assert result.success, result.error
        assert [s.status for s in result.steps] == [
            "done", "done", "done", "done", "done", "skipped", "done", "done",
        ]
        assert result.launch_config["configurations"][0]["env"]["DOTNET_ROOT"] == "/lib/dotnet"
        assert launch_json.exists()
        assert result.pid is None
        assert session.closed
        assert not any("apt-get" in c for c in session.commands)

    @pytest.mark.asyncio
    async def test_run_mode_reports_pid(self, tmp_path, probe_responses):
        responses = probe_responses(sdks="6.0.417")
        responses["if getent group"] = SSHResult(stdout="yes\n")
        responses["sg gpio -c"] = SSHResult(stdout="4242\n")
        session = MockSSHConnection(responses, default=SSHResult(returncode=0))

        result = await _pipeline(session).deploy(_project(tmp_path), _info(tmp_path), debug=False)

        assert result.success, result.error
        assert result.pid == 4242
        assert result.launch_config is None
        assert result.steps[4].status == "skipped"
        launch = [c for c in session.commands if c.startswith("sg gpio -c")][0]
        assert "/lib/dotnet/dotnet /home/pi/vsdbg/Blinkie/Blinkie.dll --pin 17" in launch

    @pytest.mark.asyncio
    async def test_unsupported_board_fails_after_probe(self, tmp_path, probe_responses):
        responses = probe_responses(processor="armv6l", model="Raspberry Pi Zero W Rev 1.1")
        session = MockSSHConnection(responses, default=SSHResult(returncode=0))

        result = await _pipeline(session).deploy(_project(tmp_path), _info(tmp_path))

        assert not result.success
        assert result.error_type == "UnsupportedBoardError"
        assert [s.status for s in result.steps[:4]] == ["done", "done", "failed", "skipped"]
        assert session.closed

    @pytest.mark.asyncio
    async def test_unsupported_board_can_be_allowed(self, tmp_path, probe_responses):
        responses = probe_responses(
            processor="armv7l", model="Raspberry Pi 2 Model B Rev 1.1", sdks="6.0.417", has_debugger=True,
        )
        session = MockSSHConnection(responses, default=SSHResult(returncode=0))

        result = await _pipeline(session).deploy(
            _project(tmp_path), _info(tmp_path), allow_unsupported_board=True,
        )

        assert result.success, result.error
        assert not result.status.board_supported

    @pytest.mark.asyncio
    async def test_unknown_architecture_fails(self, tmp_path, probe_responses):
        session = MockSSHConnection(probe_responses(processor="x86_64"), default=SSHResult(returncode=0))

        result = await _pipeline(session).deploy(_project(tmp_path), _info(tmp_path))

        assert not result.success
        assert result.error_type == "UnsupportedArchitectureError"

    @pytest.mark.asyncio
    async def test_incompatible_project_never_connects(self, tmp_path):
        session = MockSSHConnection()
        pipeline = _pipeline(session)

        result = await pipeline.deploy(_project(tmp_path, is_executable=False), _info(tmp_path))

        assert not result.success
        assert result.error_type == "DeploymentError"
        assert pipeline.connections.calls == 0
        assert result.steps[0].status == "failed"

    @pytest.mark.asyncio
    async def test_progress_callbacks(self, tmp_path, probe_responses):
        session = MockSSHConnection(
            probe_responses(sdks="6.0.417", has_debugger=True), default=SSHResult(returncode=0),
        )
        pipeline = _pipeline(session)
        updates = []
        pipeline.on_progress(lambda name, step: updates.append((name, step.name, step.status)))

        await pipeline.deploy(_project(tmp_path), _info(tmp_path))

        assert ("Blinkie", "connect", "running") in updates
        assert ("Blinkie", "connect", "done") in updates
        assert ("Blinkie", "publish", "skipped") in updates
        assert pipeline.progress.depth == 0

    @pytest.mark.asyncio
    async def test_unverified_catalog_cannot_install_missing_sdk(self, tmp_path, probe_responses):
        session = MockSSHConnection(probe_responses(sdks=""), default=SSHResult(returncode=0))

        result = await _pipeline(session).deploy(_project(tmp_path), _info(tmp_path))

        assert not result.success
        assert result.error_type == "UnsupportedVersionError"
        assert [s.status for s in result.steps[2:5]] == ["done", "failed", "skipped"]
        assert session.uploads == []

    @pytest.mark.asyncio
    async def test_connection_lost_is_reported(self, tmp_path, probe_responses):
        session = _DroppingSession(probe_responses(), drop_on="which unzip")

        result = await _pipeline(session).deploy(_project(tmp_path), _info(tmp_path))

        assert not result.success
        assert result.error_type == "RemoteConnectionError"
        assert "Connection lost" in result.error
        assert [s.status for s in result.steps[:4]] == ["done", "done", "failed", "skipped"]
        assert all(s.status != "running" for s in result.steps)
        assert session.closed

    @pytest.mark.asyncio
    async def test_one_progress_surface_while_creating_keys(self, tmp_path, monkeypatch, probe_responses):
        from raspdebug import connection
        from raspdebug.connection import ConnectionManager
        from raspdebug.deploy import DeploymentPipeline
        from raspdebug.installer import Installer
        from raspdebug.progress import ProgressCoordinator, RecordingProgressSurface

        session = MockSSHConnection(
            probe_responses(sdks="6.0.417", has_debugger=True), default=SSHResult(returncode=0),
        )

        async def fake_connect(*args, **kwargs):
            return session

        monkeypatch.setattr(connection, "connect_ssh", fake_connect)
        surface = RecordingProgressSurface()
        client = httpx.AsyncClient(transport=httpx.MockTransport(_no_downloads))
        pipeline = DeploymentPipeline(
            connections=ConnectionManager(keys_dir=tmp_path / "keys"),
            installer=Installer(client=client, retry_delay=0),
            progress=ProgressCoordinator(surface),
        )

        result = await pipeline.deploy(_project(tmp_path), ConnectionInfo(host="10.0.0.5"))

        assert result.success, result.error
        assert pipeline.connections.progress is pipeline.progress
        assert pipeline.installer.progress is pipeline.progress
        assert ("update", "Creating SSH keys...") in surface.events
        assert surface.open_count == 1
        assert surface.close_count == 1
