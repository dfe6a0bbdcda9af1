"""pytest configuration for raspdebug tests."""

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture(autouse=True)
def _temp_settings(tmp_path, monkeypatch):
    """Keep connection stores and keys out of the real home folder."""
    from raspdebug import config

    settings = tmp_path / "settings"
    monkeypatch.setattr(config, "SETTINGS_DIR", settings)
    monkeypatch.setattr(config, "KEYS_DIR", settings / "keys")
    monkeypatch.setattr(config, "CONNECTIONS_PATH", settings / "connections.json")
    yield settings


@pytest.fixture
def probe_responses():
    """Build MockSSHConnection responses for the device probe commands."""
    from raspdebug.connection import SSHResult

    def _build(
        processor="aarch64",
        model="Raspberry Pi 4 Model B Rev 1.4",
        revision="c03111",
        sdks="",
        has_unzip=True,
        has_debugger=False,
        path="/usr/local/bin:/usr/bin:/bin",
    ):
        return {
            "uname -m": SSHResult(stdout=f"{processor}\n"),
            "echo $PATH": SSHResult(stdout=f"{path}\n"),
            "which unzip": SSHResult(
                stdout="/usr/bin/unzip\n" if has_unzip else "",
                returncode=0 if has_unzip else 1,
            ),
            "test -f /lib/dotnet/vsdbg/vsdbg && echo yes || echo no":
                SSHResult(stdout="yes\n" if has_debugger else "no\n"),
            "ls -m /lib/dotnet/sdk 2>/dev/null || true": SSHResult(stdout=f"{sdks}\n"),
            "cat /proc/device-tree/model 2>/dev/null || true":
                SSHResult(stdout=f"{model}\x00" if model else ""),
            "grep -m1 '^Revision' /proc/cpuinfo | cut -d: -f2":
                SSHResult(stdout=f" {revision}\n"),
        }

    return _build
