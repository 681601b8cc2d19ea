from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class VirtualMachineInfo:
    name: str
    resource_group: str
    location: str | None = None
    os_disk_uri: str | None = None
    network_interface_ids: list[str] = field(default_factory=list)
    statuses: list[str] = field(default_factory=list)


@dataclass
class NetworkInterfaceInfo:
    name: str
    public_ip_ids: list[str] = field(default_factory=list)


@dataclass
class PublicIPInfo:
    name: str
    ip_address: str | None = None
    fqdn: str | None = None


@dataclass
class VirtualNetworkInfo:
    name: str
    resource_group: str
    subnets: list[str] = field(default_factory=list)


@dataclass
class StorageAccountInfo:
    name: str
    resource_group: str
    location: str | None = None


@dataclass
class ImageInfo:
    publisher: str
    offer: str
    sku: str
    version: str


class ProviderClient(Protocol):
    """Operations the provisioner needs from the cloud management API.

    Implementations raise ``NotFoundError`` for missing resources,
    ``TransientProviderError`` for network faults and ``ProviderError`` for
    everything else the provider rejects.
    """

    def create_or_update_resource_group(self, name: str, location: str) -> None: ...

    def create_or_update_deployment(
        self, resource_group: str, deployment_name: str, template: dict[str, Any]
    ) -> None: ...

    def get_vm(self, resource_group: str, vm_name: str) -> VirtualMachineInfo: ...

    def get_vm_with_instance_view(
        self, resource_group: str, vm_name: str
    ) -> VirtualMachineInfo: ...

    def list_vms(self) -> list[VirtualMachineInfo]: ...

    def power_on(self, resource_group: str, vm_name: str) -> None: ...

    def power_off(self, resource_group: str, vm_name: str) -> None: ...

    def restart(self, resource_group: str, vm_name: str) -> None: ...

    def delete_vm(self, resource_group: str, vm_name: str) -> None: ...

    def get_network_interface(
        self, resource_group: str, name: str
    ) -> NetworkInterfaceInfo: ...

    def delete_network_interface(self, resource_group: str, name: str) -> None: ...

    def get_public_ip(self, resource_group: str, name: str) -> PublicIPInfo: ...

    def delete_public_ip(self, resource_group: str, name: str) -> None: ...

    def list_virtual_networks(self) -> list[VirtualNetworkInfo]: ...

    def get_image(
        self, location: str, publisher: str, offer: str, sku: str, version: str
    ) -> ImageInfo: ...

    def list_storage_accounts(self) -> list[StorageAccountInfo]: ...

    def get_storage_account_keys(
        self, resource_group: str, account_name: str
    ) -> list[str]: ...

    def delete_blob_if_exists(
        self, account_name: str, account_key: str, container: str, blob: str
    ) -> bool: ...

    def list_locations(self) -> list[str]: ...

    def list_vm_sizes(self, location: str) -> list[str]: ...
