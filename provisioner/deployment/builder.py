import copy
import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from provisioner.catalog import Catalog
from provisioner.errors import InvalidLocationError, TemplateRenderError
from provisioner.templates import WorkerTemplate


logger = logging.getLogger(__name__)

RESOURCES_DIR = Path(__file__).resolve().parent / "resources"
CATALOG_IMAGE_DESCRIPTOR = "catalog_image.json"
CUSTOM_IMAGE_DESCRIPTOR = "custom_image.json"
WINDOWS_COMPUTER_NAME_MAX = 15

_name_sequence = itertools.count(1)


class DescriptorKey(str, Enum):
    COUNT = "count"
    VM_NAME = "vmName"
    LOCATION = "location"
    VM_SIZE = "vmSize"
    ADMIN_USERNAME = "adminUsername"
    ADMIN_PASSWORD = "adminPassword"
    IMAGE_PUBLISHER = "imagePublisher"
    IMAGE_OFFER = "imageOffer"
    IMAGE_SKU = "imageSku"
    OS_TYPE = "osType"
    IMAGE = "image"
    STORAGE_ACCOUNT_NAME = "storageAccountName"
    VIRTUAL_NETWORK_NAME = "virtualNetworkName"
    SUBNET_NAME = "subnetName"

    @property
    def section(self) -> str:
        return "parameters" if self is DescriptorKey.COUNT else "variables"


class DeploymentDescriptor:
    """Typed access to a deployment document's parameters and variables.

    Values are only ever replaced whole; the rest of the document is left as
    loaded.
    """

    def __init__(self, document: dict[str, Any]):
        for section in ("parameters", "variables"):
            if not isinstance(document.get(section), dict):
                raise TemplateRenderError(f"descriptor has no {section} object")
        self._document = document

    def set(self, key: DescriptorKey, value: Any) -> "DeploymentDescriptor":
        if key is DescriptorKey.COUNT:
            value = {"type": "int", "defaultValue": int(value)}
        self._document[key.section][key.value] = value
        return self

    def set_if_present(self, key: DescriptorKey, value: str | None) -> "DeploymentDescriptor":
        if value and value.strip():
            self.set(key, value)
        return self

    def get(self, key: DescriptorKey) -> Any:
        value = self._document[key.section].get(key.value)
        if key is DescriptorKey.COUNT and isinstance(value, dict):
            return value.get("defaultValue")
        return value

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._document)


@dataclass(frozen=True)
class DeploymentRequest:
    deployment_name: str
    vm_base_name: str
    count: int
    resource_group: str
    location: str
    descriptor: dict[str, Any] = field(repr=False)


@dataclass(frozen=True)
class DeploymentInfo:
    deployment_name: str
    vm_base_name: str
    count: int
    resource_group: str

    @property
    def vm_names(self) -> list[str]:
        return [f"{self.vm_base_name}{index}" for index in range(self.count)]


@lru_cache(maxsize=None)
def _load_base(filename: str) -> str:
    return (RESOURCES_DIR / filename).read_text(encoding="utf-8")


def load_base_descriptor(filename: str) -> DeploymentDescriptor:
    try:
        document = json.loads(_load_base(filename))
    except (OSError, ValueError) as exc:
        raise TemplateRenderError(f"cannot parse base descriptor {filename}: {exc}") from exc
    if not isinstance(document, dict):
        raise TemplateRenderError(f"base descriptor {filename} is not an object")
    return DeploymentDescriptor(document)


def vm_base_name(template_name: str, count: int, windows: bool = False) -> str:
    suffix = f"{next(_name_sequence) % 0x1000:03x}{uuid.uuid4().hex[:5]}"
    if not windows:
        return f"{template_name}{count}{suffix}"
    # windows computer names, index included, stay within the limit
    room = WINDOWS_COMPUTER_NAME_MAX - len(str(count - 1)) - len(suffix)
    return f"{template_name[:max(room, 1)]}{suffix}"


def deployment_name(template_name: str) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S%f")
    return f"{template_name}{stamp}"


class DeploymentTemplateBuilder:
    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def render(self, template: WorkerTemplate, count: int) -> DeploymentRequest:
        if count < 1:
            raise ValueError("count must be at least 1")
        location = self.catalog.location_code(template.location)
        if location is None:
            raise InvalidLocationError(template.location)

        filename = (
            CUSTOM_IMAGE_DESCRIPTOR
            if template.uses_custom_image
            else CATALOG_IMAGE_DESCRIPTOR
        )
        descriptor = load_base_descriptor(filename)
        base_name = vm_base_name(template.name, count, windows=template.is_windows)
        logger.info(
            "rendering deployment template=%s base=%s count=%s descriptor=%s",
            template.name,
            base_name,
            count,
            filename,
        )
        (
            descriptor.set(DescriptorKey.COUNT, count)
            .set(DescriptorKey.VM_NAME, base_name)
            .set(DescriptorKey.LOCATION, location)
            .set_if_present(DescriptorKey.IMAGE_PUBLISHER, template.image_publisher)
            .set_if_present(DescriptorKey.IMAGE_OFFER, template.image_offer)
            .set_if_present(DescriptorKey.IMAGE_SKU, template.image_sku)
            .set_if_present(DescriptorKey.OS_TYPE, template.os_type)
            .set_if_present(DescriptorKey.IMAGE, template.image)
            .set(DescriptorKey.VM_SIZE, template.vm_size)
            .set(DescriptorKey.ADMIN_USERNAME, template.admin_username)
            .set(DescriptorKey.ADMIN_PASSWORD, template.admin_password)
            .set_if_present(DescriptorKey.STORAGE_ACCOUNT_NAME, template.storage_account)
            .set_if_present(DescriptorKey.VIRTUAL_NETWORK_NAME, template.virtual_network)
            .set_if_present(DescriptorKey.SUBNET_NAME, template.subnet)
        )
        return DeploymentRequest(
            deployment_name=deployment_name(template.name),
            vm_base_name=base_name,
            count=count,
            resource_group=template.resource_group,
            location=location,
            descriptor=descriptor.to_dict(),
        )
