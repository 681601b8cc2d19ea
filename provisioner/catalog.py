from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType


STANDARD_LOCATIONS = {
    "East US": "eastus",
    "East US 2": "eastus2",
    "West US": "westus",
    "South Central US": "southcentralus",
    "Central US": "centralus",
    "North Central US": "northcentralus",
    "North Europe": "northeurope",
    "West Europe": "westeurope",
    "Southeast Asia": "southeastasia",
    "East Asia": "eastasia",
    "Japan West": "japanwest",
    "Japan East": "japaneast",
    "Brazil South": "brazilsouth",
    "Australia Southeast": "australiasoutheast",
    "Australia East": "australiaeast",
    "Central India": "centralindia",
    "South India": "southindia",
    "West India": "westindia",
}

CHINA_LOCATIONS = {
    "China North": "chinanorth",
    "China East": "chinaeast",
}

_BASIC_SIZES = (
    "A5",
    "A6",
    "A7",
    "Basic_A0",
    "Basic_A1",
    "Basic_A2",
    "Basic_A3",
    "Basic_A4",
    "ExtraLarge",
    "ExtraSmall",
    "Large",
    "Medium",
    "Small",
)
_COMPUTE_INTENSIVE = ("A8", "A9", "A10", "A11")
_D_V1 = tuple(f"Standard_D{n}" for n in (1, 2, 3, 4, 11, 12, 13, 14))
_D_V2 = tuple(f"Standard_D{n}_v2" for n in (1, 2, 3, 4, 5, 11, 12, 13, 14))
_DS_V1 = tuple(f"Standard_DS{n}" for n in (1, 2, 3, 4, 11, 12, 13, 14))
_DS_V2 = tuple(f"Standard_DS{n}_v2" for n in (1, 2, 3, 4, 5, 11, 12, 13, 14))
_F = tuple(f"Standard_F{n}" for n in (1, 2, 4, 8, 16))
_FS = tuple(f"Standard_F{n}s" for n in (1, 2, 4, 8, 16))
_G = tuple(f"Standard_G{n}" for n in range(1, 6)) + tuple(
    f"Standard_GS{n}" for n in range(1, 6)
)

_FULL = _BASIC_SIZES + _D_V1 + _D_V2 + _DS_V1 + _DS_V2 + _F + _FS
_V2_ONLY = _BASIC_SIZES + _D_V2 + _DS_V2 + _F + _FS

SIZES_BY_LOCATION = {
    "East US": _COMPUTE_INTENSIVE + _FULL,
    "East US 2": _FULL + _G,
    "West US": _COMPUTE_INTENSIVE + _FULL + _G,
    "South Central US": _COMPUTE_INTENSIVE + _FULL,
    "Central US": _FULL,
    "North Central US": _COMPUTE_INTENSIVE + _BASIC_SIZES + _D_V1 + _D_V2 + _DS_V2 + _F + _FS,
    "North Europe": _COMPUTE_INTENSIVE + _FULL,
    "West Europe": _COMPUTE_INTENSIVE + _FULL + _G,
    "Southeast Asia": _FULL + _G,
    "East Asia": _BASIC_SIZES + _D_V1 + _D_V2 + _DS_V1 + _F,
    "Japan West": _FULL,
    "Japan East": _COMPUTE_INTENSIVE + _FULL,
    "Brazil South": _BASIC_SIZES + _D_V1 + _D_V2 + _DS_V2 + _F + _FS,
    "Australia Southeast": _FULL,
    "Australia East": _FULL + _G,
    "Central India": _V2_ONLY,
    "South India": _V2_ONLY,
    "West India": _BASIC_SIZES + _D_V2 + _F,
    # China sizes may not be exact
    "China North": _FULL + _G,
    "China East": _BASIC_SIZES + _D_V1 + _D_V2 + _DS_V1 + _F,
}


@dataclass(frozen=True)
class Catalog:
    """Read-only lookup tables keyed by location display name."""

    standard_locations: Mapping[str, str]
    china_locations: Mapping[str, str]
    sizes: Mapping[str, tuple[str, ...]]

    @property
    def all_locations(self) -> Mapping[str, str]:
        return MappingProxyType({**self.standard_locations, **self.china_locations})

    def location_code(self, display_name: str | None) -> str | None:
        if not display_name:
            return None
        return self.all_locations.get(display_name)

    def locations_for(self, cloud: str) -> Mapping[str, str]:
        if cloud.lower() == "china":
            return self.china_locations
        return self.standard_locations

    def sizes_for(self, display_name: str) -> tuple[str, ...]:
        return self.sizes.get(display_name, ())


def build_default_catalog() -> Catalog:
    return Catalog(
        standard_locations=MappingProxyType(dict(STANDARD_LOCATIONS)),
        china_locations=MappingProxyType(dict(CHINA_LOCATIONS)),
        sizes=MappingProxyType(dict(SIZES_BY_LOCATION)),
    )


DEFAULT_CATALOG = build_default_catalog()
