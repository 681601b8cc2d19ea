import logging
import socket
import time
from collections.abc import Callable
from enum import Enum

import paramiko
from paramiko.ssh_exception import AuthenticationException, NoValidConnectionsError


logger = logging.getLogger(__name__)

READ_CHUNK = 32768


class ConnectErrorKind(str, Enum):
    UNKNOWN_HOST = "UNKNOWN_HOST"
    REFUSED = "REFUSED"
    AUTH = "AUTH"
    OTHER = "OTHER"


def classify_connect_error(exc: BaseException) -> ConnectErrorKind:
    if isinstance(exc, socket.gaierror):
        return ConnectErrorKind.UNKNOWN_HOST
    if isinstance(exc, AuthenticationException):
        return ConnectErrorKind.AUTH
    if isinstance(exc, (ConnectionRefusedError, NoValidConnectionsError)):
        return ConnectErrorKind.REFUSED
    return ConnectErrorKind.OTHER


class RemoteCommand:
    """An exec channel with separate input, output and error streams."""

    def __init__(self, channel: paramiko.Channel):
        self.channel = channel

    def write_input(self, data: bytes) -> None:
        self.channel.sendall(data)

    def drain(self, sink: Callable[[str, str], None]) -> None:
        """Feed both output streams to ``sink`` until the remote side closes them."""
        pending = {"stdout": "", "stderr": ""}

        def emit(stream: str, chunk: bytes) -> None:
            text = pending[stream] + chunk.decode("utf-8", errors="replace")
            *lines, pending[stream] = text.split("\n")
            for line in lines:
                sink(stream, line)

        while True:
            progressed = False
            if self.channel.recv_ready():
                emit("stdout", self.channel.recv(READ_CHUNK))
                progressed = True
            if self.channel.recv_stderr_ready():
                emit("stderr", self.channel.recv_stderr(READ_CHUNK))
                progressed = True
            if (
                not progressed
                and self.channel.exit_status_ready()
                and not self.channel.recv_ready()
                and not self.channel.recv_stderr_ready()
            ):
                break
            if not progressed:
                time.sleep(0.05)
        for stream, rest in pending.items():
            if rest:
                sink(stream, rest)

    def exit_status(self) -> int:
        return self.channel.recv_exit_status()

    def close(self) -> None:
        self.channel.close()


class SSHSession:
    def __init__(self, client: paramiko.SSHClient):
        self._client = client

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        username: str,
        password: str,
        timeout: float = 60,
        keepalive: int = 60,
    ) -> "SSHSession":
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=port,
                username=username,
                password=password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None and keepalive > 0:
            transport.set_keepalive(keepalive)
        logger.debug("ssh session open host=%s port=%s user=%s", host, port, username)
        return cls(client)

    def exec(self, command: str) -> RemoteCommand:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("ssh transport is not active")
        channel = transport.open_session()
        channel.exec_command(command)
        return RemoteCommand(channel)

    def upload(self, data: bytes, remote_path: str) -> None:
        sftp = self._client.open_sftp()
        try:
            with sftp.open(remote_path, "wb") as handle:
                handle.write(data)
        finally:
            sftp.close()

    def close(self) -> None:
        self._client.close()
