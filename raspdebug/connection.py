"""SSH sessions to the Raspberry and the connection manager.

Connecting follows these rules:

  1. Resolve the host (DNS unless it is already an IP literal)
  2. Authenticate with the connection's SSH key when one exists, otherwise
     with the password
  3. If the key is rejected but a password is stored (typically a re-imaged
     Raspberry), log in with the password and re-authorize the key
  4. If no key exists yet, create a key pair on the Raspberry, download it
     and record it against the connection so later sessions use the key

Uses asyncssh for real SSH; a MockSSHConnection class is provided for tests.
"""

from __future__ import annotations

import asyncio
import getpass
import ipaddress
import logging
import shlex
import socket
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

import asyncssh

from raspdebug import config
from raspdebug.errors import ConnectionFailure, RemoteConnectionError
from raspdebug.progress import ProgressCoordinator

if TYPE_CHECKING:
    from raspdebug.store import ConnectionStore

logger = logging.getLogger(__name__)


# ── Connection info ───────────────────────────────────────────────


@dataclass
class ConnectionInfo:
    """A Raspberry's network details and credentials."""

    host: str
    port: int = 22
    user: str = "pi"
    password: str | None = "raspberry"
    private_key_path: str | None = None
    public_key_path: str | None = None
    is_default: bool = False

    @property
    def name(self) -> str:
        """Connection name like ``pi@raspberrypi.local``."""
        return f"{self.user}@{self.host}"

    @property
    def sort_key(self) -> str:
        return self.name.lower()

    @property
    def authentication(self) -> str:
        """The active authentication path: ``"key"`` or ``"password"``."""
        return "key" if self.private_key_path else "password"

    def has_key(self) -> bool:
        """True when a private key is recorded and present on disk."""
        return bool(self.private_key_path) and Path(self.private_key_path).exists()

    @classmethod
    def from_dict(cls, data: dict) -> ConnectionInfo:
        return cls(
            host=data["host"],
            port=int(data.get("port", 22)),
            user=data.get("user", "pi"),
            password=data.get("password"),
            private_key_path=data.get("privateKeyPath"),
            public_key_path=data.get("publicKeyPath"),
            is_default=bool(data.get("isDefault", False)),
        )

    def to_dict(self) -> dict:
        data: dict = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "authenticationMode": self.authentication,
            "isDefault": self.is_default,
        }
        if self.password is not None:
            data["password"] = self.password
        if self.private_key_path:
            data["privateKeyPath"] = self.private_key_path
        if self.public_key_path:
            data["publicKeyPath"] = self.public_key_path
        return data


# ── SSH abstraction ───────────────────────────────────────────────


@dataclass
class SSHResult:
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    @property
    def all_text(self) -> str:
        return "\n".join(t for t in (self.stdout.strip(), self.stderr.strip()) if t)


class SSHConnection(Protocol):
    """Protocol for SSH sessions, backed by asyncssh or a mock."""

    name: str

    async def run(self, command: str) -> SSHResult:
        ...

    async def sudo(self, command: str) -> SSHResult:
        ...

    async def upload(self, local_path: str | Path, remote_path: str) -> None:
        ...

    async def download(self, remote_path: str) -> bytes:
        ...

    async def close(self) -> None:
        ...


class AsyncSSHConnection:
    """Real SSH session using asyncssh."""

    def __init__(self, conn: asyncssh.SSHClientConnection, name: str) -> None:
        self._conn = conn
        self.name = name

    async def __aenter__(self) -> AsyncSSHConnection:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def _failure(self, exc: Exception) -> RemoteConnectionError:
        if isinstance(exc, asyncssh.SFTPError):
            return RemoteConnectionError(self.name, f"SFTP: {exc}", ConnectionFailure.COMMAND_FAILED)
        return RemoteConnectionError(
            self.name, f"Connection lost: {str(exc) or type(exc).__name__}", ConnectionFailure.UNREACHABLE
        )

    async def run(self, command: str) -> SSHResult:
        logger.debug("[%s]: run: %s", self.name, command)
        try:
            result = await self._conn.run(command, check=False)
        except (asyncssh.Error, OSError) as exc:
            raise self._failure(exc) from exc
        return SSHResult(
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
            returncode=result.exit_status or 0,
        )

    async def sudo(self, command: str) -> SSHResult:
        """Run a shell script as root (Raspberry Pi OS has passwordless sudo)."""
        return await self.run(f"sudo -n bash -c {shlex.quote(command)}")

    async def upload(self, local_path: str | Path, remote_path: str) -> None:
        logger.debug("[%s]: upload %s -> %s", self.name, local_path, remote_path)
        try:
            async with self._conn.start_sftp_client() as sftp:
                await sftp.put(str(local_path), remote_path)
        except (asyncssh.Error, OSError) as exc:
            raise self._failure(exc) from exc

    async def download(self, remote_path: str) -> bytes:
        logger.debug("[%s]: download %s", self.name, remote_path)
        try:
            async with self._conn.start_sftp_client() as sftp:
                async with sftp.open(remote_path, "rb") as f:
                    return await f.read()
        except (asyncssh.Error, OSError) as exc:
            raise self._failure(exc) from exc

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class MockSSHConnection:
    """Mock SSH for testing. Returns pre-configured responses.

    Every command (``run`` and ``sudo``) is appended to ``commands``;
    uploads are recorded in ``uploads`` as ``(local, remote)`` pairs and
    ``download`` serves bytes from ``files``.
    """

    def __init__(
        self,
        responses: dict[str, SSHResult] | None = None,
        files: dict[str, bytes] | None = None,
        default: SSHResult | None = None,
        name: str = "pi@mock",
    ) -> None:
        self.name = name
        self._responses = responses or {}
        self._default = default or SSHResult(stdout="", returncode=1)
        self.files = files or {}
        self.commands: list[str] = []
        self.uploads: list[tuple[str, str]] = []
        self.closed = False

    async def run(self, command: str) -> SSHResult:
        self.commands.append(command)
        # Check exact match first, then prefix match
        if command in self._responses:
            return self._responses[command]
        for key, val in self._responses.items():
            if command.startswith(key):
                return val
        return self._default

    async def sudo(self, command: str) -> SSHResult:
        return await self.run(command)

    async def upload(self, local_path: str | Path, remote_path: str) -> None:
        self.uploads.append((str(local_path), remote_path))

    async def download(self, remote_path: str) -> bytes:
        self.commands.append(f"download {remote_path}")
        return self.files.get(remote_path, b"")

    async def close(self) -> None:
        self.closed = True


def check(session: SSHConnection, result: SSHResult) -> SSHResult:
    """Raise :class:`RemoteConnectionError` if a remote command failed."""
    if result.returncode != 0:
        raise RemoteConnectionError(
            session.name, result.all_text or f"exit code {result.returncode}",
            ConnectionFailure.COMMAND_FAILED,
        )
    return result


async def connect_ssh(
    host: str,
    username: str = "pi",
    password: str | None = None,
    key_path: str | None = None,
    port: int = 22,
    timeout: float = config.CONNECT_TIMEOUT,
    name: str | None = None,
) -> AsyncSSHConnection:
    """Open an asyncssh session with exactly one authentication method."""
    kwargs: dict = {
        "host": host,
        "port": port,
        "username": username,
        "known_hosts": None,  # Raspberries are re-imaged often; host keys change
        "connect_timeout": timeout,
        "agent_path": None,
    }
    if key_path:
        kwargs["client_keys"] = [key_path]
        kwargs["preferred_auth"] = "publickey"
    else:
        kwargs["client_keys"] = None
        kwargs["password"] = password
        kwargs["preferred_auth"] = "password,keyboard-interactive"

    conn = await asyncssh.connect(**kwargs)
    return AsyncSSHConnection(conn, name or f"{username}@{host}")


async def resolve_address(host: str) -> str:
    """Return ``host`` if it is an IP literal, else its first DNS address."""
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass

    logger.info("DNS lookup for: %s", host)
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise RemoteConnectionError(host, "DNS lookup failed.", ConnectionFailure.DNS_FAILURE) from exc
    if not infos:
        raise RemoteConnectionError(host, "DNS lookup failed.", ConnectionFailure.DNS_FAILURE)
    return infos[0][4][0]


# ── Connection manager ────────────────────────────────────────────


@dataclass
class ConnectionManager:
    """Opens authenticated sessions and provisions SSH keys.

    ``confirm_reauthorize`` is asked before a rejected key is silently
    re-authorized using the stored password. A key rejection can also mean
    the key was revoked on purpose; hosts that want the user to decide pass
    a callback returning False to refuse.
    """

    progress: ProgressCoordinator = field(default_factory=ProgressCoordinator)
    store: ConnectionStore | None = None
    keys_dir: Path | None = None
    confirm_reauthorize: Callable[[ConnectionInfo], bool] | None = None
    connect_timeout: float = config.CONNECT_TIMEOUT

    async def connect(self, info: ConnectionInfo) -> SSHConnection:
        """Return a live, authenticated session or raise RemoteConnectionError."""
        async with self.progress.operation(f"Connecting to [{info.name}]..."):
            address = await resolve_address(info.host)
            session = await self._authenticate(info, address)
            try:
                if not info.has_key():
                    async with self.progress.operation("Creating SSH keys..."):
                        await self._create_keys(session, info)
            except BaseException:
                await session.close()
                raise
            logger.info("[%s]: Connected (%s)", info.name, info.authentication)
            return session

    async def _authenticate(
        self,
        info: ConnectionInfo,
        address: str,
        use_password: bool = False,
    ) -> SSHConnection:
        use_key = info.has_key() and not use_password
        if use_key:
            logger.info("[%s]: Auth via SSH keys", info.host)
        else:
            logger.info("[%s]: Auth via username/password", info.host)

        try:
            return await connect_ssh(
                address,
                username=info.user,
                password=None if use_key else info.password,
                key_path=info.private_key_path if use_key else None,
                port=info.port,
                timeout=self.connect_timeout,
                name=info.name,
            )
        except asyncssh.PermissionDenied as exc:
            if not use_key or not info.password:
                raise RemoteConnectionError(
                    info.name, f"Authentication failed: {exc.reason}",
                    ConnectionFailure.AUTH_FAILURE,
                ) from exc
            if self.confirm_reauthorize is not None and not self.confirm_reauthorize(info):
                raise RemoteConnectionError(
                    info.name, "SSH key was rejected and re-authorization was declined.",
                    ConnectionFailure.AUTH_FAILURE,
                ) from exc

            logger.warning(
                "[%s]: SSH auth failed: Try using the password and reauthorizing the public key",
                info.host,
            )
            session = await self._authenticate(info, address, use_password=True)
            try:
                await self._reauthorize_key(session, info)
            except BaseException:
                await session.close()
                raise
            return session
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise RemoteConnectionError(
                info.name, "Connection timed out.", ConnectionFailure.TIMEOUT,
            ) from exc
        except (OSError, asyncssh.Error) as exc:
            raise RemoteConnectionError(
                info.name, f"Cannot connect: {exc}", ConnectionFailure.UNREACHABLE,
            ) from exc

    async def _reauthorize_key(self, session: SSHConnection, info: ConnectionInfo) -> None:
        """Append the connection's public key to authorized_keys if missing."""
        logger.info("[%s]: Reauthorizing the public key", info.host)
        if not info.public_key_path or not Path(info.public_key_path).exists():
            raise RemoteConnectionError(
                info.name, "Public key file is missing; cannot reauthorize.",
                ConnectionFailure.AUTH_FAILURE,
            )

        public_key = (await asyncio.to_thread(Path(info.public_key_path).read_text)).strip()
        home = f"/home/{info.user}"
        quoted = shlex.quote(public_key)
        script = (
            f"mkdir -p {home}/.ssh && chmod 700 {home}/.ssh\n"
            f"touch {home}/.ssh/authorized_keys\n"
            f"if ! grep --quiet -F {quoted} {home}/.ssh/authorized_keys ; then\n"
            f"    echo {quoted} >> {home}/.ssh/authorized_keys\n"
            f"    exit $?\n"
            f"fi\n"
            f"exit 0\n"
        )
        check(session, await session.run(script))

    async def _create_keys(self, session: SSHConnection, info: ConnectionInfo) -> None:
        """Create a key pair on the Raspberry and record it locally."""
        logger.info("[%s]: Creating SSH keys", info.name)

        key_name = str(uuid.uuid4())
        home = f"/home/{info.user}"
        temp_private = f"{home}/{key_name}"
        temp_public = f"{temp_private}.pub"
        comment = f"{getpass.getuser()}@{socket.gethostname()}"

        script = (
            f"if ! ssh-keygen -t rsa -b 2048 -P '' -C {shlex.quote(comment)} "
            f"-f {temp_private} -m pem ; then\n"
            f"    exit 1\n"
            f"fi\n"
            f"mkdir -p {home}/.ssh && chmod 700 {home}/.ssh\n"
            f"touch {home}/.ssh/authorized_keys\n"
            f"cat {temp_public} >> {home}/.ssh/authorized_keys\n"
            f"exit 0\n"
        )
        try:
            check(session, await session.run(script))
            public_key = await session.download(temp_public)
            private_key = await session.download(temp_private)

            keys_dir = self.keys_dir or config.KEYS_DIR
            private_path = keys_dir / info.name
            public_path = keys_dir / f"{info.name}.pub"
            await asyncio.to_thread(
                _write_key_files, private_path, private_key, public_path, public_key
            )

            info.private_key_path = str(private_path)
            info.public_key_path = str(public_path)
            if self.store is not None:
                self.store.update_keys(info)
        finally:
            result = await session.sudo(f"rm -f {temp_private} {temp_public}")
            if result.returncode != 0:
                logger.warning("[%s]: Could not remove temporary keys: %s", info.name, result.all_text)


def _write_key_files(private_path: Path, private_key: bytes, public_path: Path, public_key: bytes) -> None:
    private_path.parent.mkdir(parents=True, exist_ok=True)
    public_path.write_bytes(public_key)
    private_path.write_bytes(private_key)
    private_path.chmod(0o600)
