import threading
from collections.abc import Callable

from provisioner.clients.provider import (
    ImageInfo,
    NetworkInterfaceInfo,
    PublicIPInfo,
    StorageAccountInfo,
    VirtualMachineInfo,
    VirtualNetworkInfo,
)
from provisioner.errors import NotFoundError
from provisioner.retry import FixedRetryStrategy
from provisioner.tasks import BackgroundTaskQueue


def no_sleep(_seconds: float) -> None:
    return None


def instant(attempts: int) -> FixedRetryStrategy:
    return FixedRetryStrategy(max_attempts=attempts, delay_sec=0)


class FakeProvider:
    def __init__(self) -> None:
        self.vms: dict[tuple[str, str], VirtualMachineInfo] = {}
        self.nics: dict[tuple[str, str], NetworkInterfaceInfo] = {}
        self.ips: dict[tuple[str, str], PublicIPInfo] = {}
        self.vnets: list[VirtualNetworkInfo] = []
        self.images: set[tuple[str, str, str]] = set()
        self.storage_keys: dict[str, list[str]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self.deleted_blobs: list[tuple[str, str, str]] = []
        self.deployments: list[tuple[str, str, dict]] = []
        self.resource_groups: list[tuple[str, str]] = []
        self.image_lookup_gate: threading.Event | None = None
        self.vnet_lookup_gate: threading.Event | None = None

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def called(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    def add_vm(
        self,
        name: str,
        resource_group: str = "rg",
        statuses: list[str] | None = None,
        os_disk_uri: str | None = None,
        address: str | None = "203.0.113.10",
    ) -> VirtualMachineInfo:
        nic_id = f"/subscriptions/s/resourceGroups/{resource_group}/providers/Microsoft.Network/networkInterfaces/{name}NIC"
        ip_id = f"/subscriptions/s/resourceGroups/{resource_group}/providers/Microsoft.Network/publicIPAddresses/{name}IPName"
        vm = VirtualMachineInfo(
            name=name,
            resource_group=resource_group,
            os_disk_uri=os_disk_uri,
            network_interface_ids=[nic_id],
            statuses=statuses
            if statuses is not None
            else ["ProvisioningState/succeeded", "PowerState/running"],
        )
        self.vms[(resource_group, name)] = vm
        self.nics[(resource_group, f"{name}NIC")] = NetworkInterfaceInfo(
            name=f"{name}NIC", public_ip_ids=[ip_id]
        )
        self.ips[(resource_group, f"{name}IPName")] = PublicIPInfo(
            name=f"{name}IPName", ip_address=address, fqdn=None
        )
        return vm

    def create_or_update_resource_group(self, name: str, location: str) -> None:
        self._enter("create_or_update_resource_group", name, location)
        self.resource_groups.append((name, location))

    def create_or_update_deployment(
        self, resource_group: str, deployment_name: str, template: dict
    ) -> None:
        self._enter("create_or_update_deployment", resource_group, deployment_name)
        self.deployments.append((resource_group, deployment_name, template))

    def _vm(self, resource_group: str, vm_name: str) -> VirtualMachineInfo:
        vm = self.vms.get((resource_group, vm_name))
        if vm is None:
            raise NotFoundError(f"vm {vm_name} not found")
        return vm

    def get_vm(self, resource_group: str, vm_name: str) -> VirtualMachineInfo:
        self._enter("get_vm", resource_group, vm_name)
        return self._vm(resource_group, vm_name)

    def get_vm_with_instance_view(
        self, resource_group: str, vm_name: str
    ) -> VirtualMachineInfo:
        self._enter("get_vm_with_instance_view", resource_group, vm_name)
        return self._vm(resource_group, vm_name)

    def list_vms(self) -> list[VirtualMachineInfo]:
        self._enter("list_vms")
        return list(self.vms.values())

    def power_on(self, resource_group: str, vm_name: str) -> None:
        self._enter("power_on", resource_group, vm_name)

    def power_off(self, resource_group: str, vm_name: str) -> None:
        self._enter("power_off", resource_group, vm_name)

    def restart(self, resource_group: str, vm_name: str) -> None:
        self._enter("restart", resource_group, vm_name)

    def delete_vm(self, resource_group: str, vm_name: str) -> None:
        self._enter("delete_vm", resource_group, vm_name)
        if self.vms.pop((resource_group, vm_name), None) is None:
            raise NotFoundError(f"vm {vm_name} not found")

    def get_network_interface(
        self, resource_group: str, name: str
    ) -> NetworkInterfaceInfo:
        self._enter("get_network_interface", resource_group, name)
        nic = self.nics.get((resource_group, name))
        if nic is None:
            raise NotFoundError(f"nic {name} not found")
        return nic

    def delete_network_interface(self, resource_group: str, name: str) -> None:
        self._enter("delete_network_interface", resource_group, name)
        if self.nics.pop((resource_group, name), None) is None:
            raise NotFoundError(f"nic {name} not found")

    def get_public_ip(self, resource_group: str, name: str) -> PublicIPInfo:
        self._enter("get_public_ip", resource_group, name)
        ip = self.ips.get((resource_group, name))
        if ip is None:
            raise NotFoundError(f"ip {name} not found")
        return ip

    def delete_public_ip(self, resource_group: str, name: str) -> None:
        self._enter("delete_public_ip", resource_group, name)
        if self.ips.pop((resource_group, name), None) is None:
            raise NotFoundError(f"ip {name} not found")

    def list_virtual_networks(self) -> list[VirtualNetworkInfo]:
        self._enter("list_virtual_networks")
        if self.vnet_lookup_gate is not None:
            self.vnet_lookup_gate.wait(5)
        return list(self.vnets)

    def get_image(
        self, location: str, publisher: str, offer: str, sku: str, version: str
    ) -> ImageInfo:
        self._enter("get_image", location, publisher, offer, sku, version)
        if self.image_lookup_gate is not None:
            self.image_lookup_gate.wait(5)
        if (publisher, offer, sku) not in self.images:
            raise NotFoundError(f"image {publisher}/{offer}/{sku} not found")
        return ImageInfo(publisher, offer, sku, version or "1.0.0")

    def list_storage_accounts(self) -> list[StorageAccountInfo]:
        self._enter("list_storage_accounts")
        return [StorageAccountInfo(name=name, resource_group="rg") for name in self.storage_keys]

    def get_storage_account_keys(self, resource_group: str, account_name: str) -> list[str]:
        self._enter("get_storage_account_keys", resource_group, account_name)
        if account_name not in self.storage_keys:
            raise NotFoundError(f"storage account {account_name} not found")
        return self.storage_keys[account_name]

    def delete_blob_if_exists(
        self, account_name: str, account_key: str, container: str, blob: str
    ) -> bool:
        self._enter("delete_blob_if_exists", account_name, container, blob)
        self.deleted_blobs.append((account_name, container, blob))
        return True

    def list_locations(self) -> list[str]:
        self._enter("list_locations")
        return ["East US"]

    def list_vm_sizes(self, location: str) -> list[str]:
        self._enter("list_vm_sizes", location)
        return ["Standard_D1_v2"]


class RecordingQueue(BackgroundTaskQueue):
    """Records submissions and runs them inline, or not at all."""

    def __init__(self, run: bool = False, history_size: int = 256):
        super().__init__(max_workers=1, name="cleanup", history_size=history_size)
        self.run = run

    def submit(self, task_name: str, fn: Callable[[], object]):
        with self._lock:
            self._history.append(task_name)
        if self.run:
            self._run(task_name, fn)
        return None


class FakeHook:
    def __init__(self) -> None:
        self.reports: list[tuple[str, str, str]] = []

    def report_failure(self, template, message, stage) -> None:
        self.reports.append((template.name, message, stage.value))


class FakeChannel:
    def __init__(self, exit_status: int = 0, lines: tuple[str, ...] = (), error: Exception | None = None):
        self._exit_status = exit_status
        self.lines = lines
        self.error = error
        self.input = b""
        self.closed = False

    def write_input(self, data: bytes) -> None:
        self.input += data

    def drain(self, sink) -> None:
        if self.error is not None:
            raise self.error
        for line in self.lines:
            sink("stdout", line)

    def exit_status(self) -> int:
        return self._exit_status

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, exits: dict[str, int] | None = None):
        self.exits = exits or {}
        self.commands: list[str] = []
        self.channels: list[FakeChannel] = []
        self.uploads: dict[str, bytes] = {}
        self.closed = False

    def exec(self, command: str) -> FakeChannel:
        self.commands.append(command)
        exit_status = 0
        for needle, status in self.exits.items():
            if needle in command:
                exit_status = status
                break
        channel = FakeChannel(exit_status=exit_status, lines=(f"ran {command}",))
        self.channels.append(channel)
        return channel

    def upload(self, data: bytes, remote_path: str) -> None:
        self.uploads[remote_path] = data

    def close(self) -> None:
        self.closed = True
