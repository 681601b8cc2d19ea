import socket

import paramiko
import pytest
from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from paramiko.ssh_exception import NoValidConnectionsError

from provisioner.clients.azure import _translate, load_provider, resource_group_from_id
from provisioner.clients.ssh import ConnectErrorKind, RemoteCommand, classify_connect_error
from provisioner.errors import (
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    is_not_found,
)
from provisioner.templates import ProviderProfile


def raising(exc):
    def call():
        raise exc

    return call


def test_translate_maps_sdk_errors():
    with pytest.raises(NotFoundError):
        _translate(raising(ResourceNotFoundError(message="vm missing")))
    with pytest.raises(TransientProviderError):
        _translate(raising(ServiceRequestError("connection reset")))
    with pytest.raises(ProviderError) as excinfo:
        _translate(raising(HttpResponseError(message="denied")))
    assert not is_not_found(excinfo.value)
    assert _translate(lambda: 42) == 42


def test_resource_group_from_id():
    nic_id = "/subscriptions/s/resourceGroups/CI-Workers/providers/Microsoft.Network/networkInterfaces/vm0NIC"
    assert resource_group_from_id(nic_id) == "CI-Workers"
    assert resource_group_from_id("not-an-id") == ""


def test_load_provider_requires_credentials():
    with pytest.raises(ConfigurationError):
        load_provider(ProviderProfile(subscription_id="sub"))


def test_classify_connect_errors():
    assert classify_connect_error(socket.gaierror("unknown")) == ConnectErrorKind.UNKNOWN_HOST
    assert classify_connect_error(paramiko.AuthenticationException("no")) == ConnectErrorKind.AUTH
    assert classify_connect_error(ConnectionRefusedError()) == ConnectErrorKind.REFUSED
    refused = NoValidConnectionsError({("203.0.113.10", 22): ConnectionRefusedError()})
    assert classify_connect_error(refused) == ConnectErrorKind.REFUSED
    assert classify_connect_error(TimeoutError()) == ConnectErrorKind.OTHER


class FakeParamikoChannel:
    def __init__(self, stdout: list[bytes], stderr: list[bytes], status: int):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.status = status
        self.sent = b""

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, _size):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, _size):
        return self.stderr.pop(0)

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return self.status

    def sendall(self, data):
        self.sent += data


def test_remote_command_splits_streams_into_lines():
    channel = FakeParamikoChannel(
        stdout=[b"openjdk version ", b"\"17\"\nready\n", b"tail"],
        stderr=[b"warn: slow\n"],
        status=3,
    )
    command = RemoteCommand(channel)
    command.write_input(b"secret\n")
    lines = []
    command.drain(lambda stream, line: lines.append((stream, line)))

    assert ("stdout", 'openjdk version "17"') in lines
    assert ("stdout", "ready") in lines
    assert ("stdout", "tail") in lines
    assert ("stderr", "warn: slow") in lines
    assert command.exit_status() == 3
    assert channel.sent == b"secret\n"
