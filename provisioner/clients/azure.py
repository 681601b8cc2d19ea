import logging
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity import AzureAuthorityHosts, ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient
from azure.mgmt.storage import StorageManagementClient
from azure.storage.blob import BlobServiceClient

from provisioner.clients.provider import (
    ImageInfo,
    NetworkInterfaceInfo,
    PublicIPInfo,
    StorageAccountInfo,
    VirtualMachineInfo,
    VirtualNetworkInfo,
)
from provisioner.errors import (
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
)
from provisioner.templates import ProviderProfile


logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOUD_ENDPOINTS = {
    "public": {
        "authority": AzureAuthorityHosts.AZURE_PUBLIC_CLOUD,
        "management": "https://management.azure.com",
        "storage_suffix": "core.windows.net",
    },
    "china": {
        "authority": AzureAuthorityHosts.AZURE_CHINA,
        "management": "https://management.chinacloudapi.cn",
        "storage_suffix": "core.chinacloudapi.cn",
    },
}


def _translate(call: Callable[[], T]) -> T:
    try:
        return call()
    except ResourceNotFoundError as exc:
        raise NotFoundError(str(exc.message or exc)) from exc
    except (ServiceRequestError, ServiceResponseError) as exc:
        raise TransientProviderError(exc.__class__.__name__, str(exc)) from exc
    except HttpResponseError as exc:
        code = exc.error.code if exc.error is not None else None
        if code == "ResourceNotFound" or exc.status_code == 404:
            raise NotFoundError(str(exc.message or exc)) from exc
        raise ProviderError(code, str(exc.message or exc)) from exc


def resource_group_from_id(resource_id: str) -> str:
    parts = resource_id.strip("/").split("/")
    lowered = [part.lower() for part in parts]
    if "resourcegroups" in lowered:
        index = lowered.index("resourcegroups")
        if index + 1 < len(parts):
            return parts[index + 1]
    return ""


def _last_segment(resource_id: str) -> str:
    return resource_id.rstrip("/").rsplit("/", 1)[-1]


class AzureProviderClient:
    def __init__(self, profile: ProviderProfile):
        endpoints = CLOUD_ENDPOINTS.get(profile.cloud, CLOUD_ENDPOINTS["public"])
        self.subscription_id = profile.subscription_id or ""
        self.storage_suffix = endpoints["storage_suffix"]
        management = endpoints["management"]
        scopes = [f"{management}/.default"]
        self.credential = ClientSecretCredential(
            tenant_id=profile.tenant_id or "",
            client_id=profile.client_id or "",
            client_secret=profile.client_secret or "",
            authority=endpoints["authority"],
        )
        kwargs: dict[str, Any] = {"base_url": management, "credential_scopes": scopes}
        self.resources = ResourceManagementClient(
            self.credential, self.subscription_id, **kwargs
        )
        self.compute = ComputeManagementClient(
            self.credential, self.subscription_id, **kwargs
        )
        self.network = NetworkManagementClient(
            self.credential, self.subscription_id, **kwargs
        )
        self.storage = StorageManagementClient(
            self.credential, self.subscription_id, **kwargs
        )
        self.subscriptions = SubscriptionClient(self.credential, **kwargs)

    def create_or_update_resource_group(self, name: str, location: str) -> None:
        _translate(
            lambda: self.resources.resource_groups.create_or_update(
                name, {"location": location}
            )
        )

    def create_or_update_deployment(
        self, resource_group: str, deployment_name: str, template: dict[str, Any]
    ) -> None:
        deployment = {"properties": {"mode": "Incremental", "template": template}}
        # submission only; callers poll the VMs themselves
        _translate(
            lambda: self.resources.deployments.begin_create_or_update(
                resource_group, deployment_name, deployment
            )
        )

    def _vm_info(self, vm: Any, resource_group: str) -> VirtualMachineInfo:
        os_disk_uri = None
        storage_profile = getattr(vm, "storage_profile", None)
        if storage_profile is not None and storage_profile.os_disk is not None:
            vhd = storage_profile.os_disk.vhd
            os_disk_uri = vhd.uri if vhd is not None else None
        nic_ids: list[str] = []
        if vm.network_profile is not None:
            nic_ids = [nic.id for nic in vm.network_profile.network_interfaces or []]
        statuses: list[str] = []
        if vm.instance_view is not None:
            statuses = [s.code for s in vm.instance_view.statuses or [] if s.code]
        return VirtualMachineInfo(
            name=vm.name,
            resource_group=resource_group or resource_group_from_id(vm.id or ""),
            location=vm.location,
            os_disk_uri=os_disk_uri,
            network_interface_ids=nic_ids,
            statuses=statuses,
        )

    def get_vm(self, resource_group: str, vm_name: str) -> VirtualMachineInfo:
        vm = _translate(
            lambda: self.compute.virtual_machines.get(resource_group, vm_name)
        )
        return self._vm_info(vm, resource_group)

    def get_vm_with_instance_view(
        self, resource_group: str, vm_name: str
    ) -> VirtualMachineInfo:
        vm = _translate(
            lambda: self.compute.virtual_machines.get(
                resource_group, vm_name, expand="instanceView"
            )
        )
        return self._vm_info(vm, resource_group)

    def list_vms(self) -> list[VirtualMachineInfo]:
        vms = _translate(lambda: list(self.compute.virtual_machines.list_all()))
        return [self._vm_info(vm, "") for vm in vms]

    def power_on(self, resource_group: str, vm_name: str) -> None:
        _translate(
            lambda: self.compute.virtual_machines.begin_start(
                resource_group, vm_name
            ).result()
        )

    def power_off(self, resource_group: str, vm_name: str) -> None:
        _translate(
            lambda: self.compute.virtual_machines.begin_power_off(
                resource_group, vm_name
            ).result()
        )

    def restart(self, resource_group: str, vm_name: str) -> None:
        _translate(
            lambda: self.compute.virtual_machines.begin_restart(
                resource_group, vm_name
            ).result()
        )

    def delete_vm(self, resource_group: str, vm_name: str) -> None:
        _translate(
            lambda: self.compute.virtual_machines.begin_delete(
                resource_group, vm_name
            ).result()
        )

    def get_network_interface(
        self, resource_group: str, name: str
    ) -> NetworkInterfaceInfo:
        nic = _translate(
            lambda: self.network.network_interfaces.get(resource_group, name)
        )
        ip_ids = [
            config.public_ip_address.id
            for config in nic.ip_configurations or []
            if config.public_ip_address is not None
        ]
        return NetworkInterfaceInfo(name=nic.name, public_ip_ids=ip_ids)

    def delete_network_interface(self, resource_group: str, name: str) -> None:
        _translate(
            lambda: self.network.network_interfaces.begin_delete(
                resource_group, name
            ).result()
        )

    def get_public_ip(self, resource_group: str, name: str) -> PublicIPInfo:
        ip = _translate(
            lambda: self.network.public_ip_addresses.get(resource_group, name)
        )
        fqdn = ip.dns_settings.fqdn if ip.dns_settings is not None else None
        return PublicIPInfo(name=ip.name, ip_address=ip.ip_address, fqdn=fqdn)

    def delete_public_ip(self, resource_group: str, name: str) -> None:
        _translate(
            lambda: self.network.public_ip_addresses.begin_delete(
                resource_group, name
            ).result()
        )

    def list_virtual_networks(self) -> list[VirtualNetworkInfo]:
        vnets = _translate(lambda: list(self.network.virtual_networks.list_all()))
        return [
            VirtualNetworkInfo(
                name=vnet.name,
                resource_group=resource_group_from_id(vnet.id or ""),
                subnets=[subnet.name for subnet in vnet.subnets or []],
            )
            for vnet in vnets
        ]

    def get_image(
        self, location: str, publisher: str, offer: str, sku: str, version: str
    ) -> ImageInfo:
        images = self.compute.virtual_machine_images
        if version:
            image = _translate(
                lambda: images.get(location, publisher, offer, sku, version)
            )
            return ImageInfo(publisher, offer, sku, image.name)
        versions = _translate(lambda: images.list(location, publisher, offer, sku))
        if not versions:
            raise NotFoundError(f"no image versions for {publisher}/{offer}/{sku}")
        return ImageInfo(publisher, offer, sku, versions[-1].name)

    def list_storage_accounts(self) -> list[StorageAccountInfo]:
        accounts = _translate(lambda: list(self.storage.storage_accounts.list()))
        return [
            StorageAccountInfo(
                name=account.name,
                resource_group=resource_group_from_id(account.id or ""),
                location=account.location,
            )
            for account in accounts
        ]

    def get_storage_account_keys(
        self, resource_group: str, account_name: str
    ) -> list[str]:
        result = _translate(
            lambda: self.storage.storage_accounts.list_keys(resource_group, account_name)
        )
        return [key.value for key in result.keys or []]

    def delete_blob_if_exists(
        self, account_name: str, account_key: str, container: str, blob: str
    ) -> bool:
        service = BlobServiceClient(
            account_url=f"https://{account_name}.blob.{self.storage_suffix}",
            credential={"account_name": account_name, "account_key": account_key},
        )
        with service:
            blob_client = service.get_blob_client(container, blob)
            try:
                _translate(blob_client.delete_blob)
            except NotFoundError:
                return False
        return True

    def list_locations(self) -> list[str]:
        locations = _translate(
            lambda: list(self.subscriptions.subscriptions.list_locations(self.subscription_id))
        )
        return [location.display_name for location in locations]

    def list_vm_sizes(self, location: str) -> list[str]:
        sizes = _translate(
            lambda: list(self.compute.virtual_machine_sizes.list(location))
        )
        return [size.name for size in sizes]


def load_provider(profile: ProviderProfile) -> AzureProviderClient:
    if not profile.is_complete():
        raise ConfigurationError("provider credentials are incomplete")
    try:
        return AzureProviderClient(profile)
    except Exception as exc:  # noqa: BLE001
        logger.warning("failed to load provider client: %s", exc)
        raise ConfigurationError(f"failed to load provider client: {exc}") from exc
