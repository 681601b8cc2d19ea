import threading

from provisioner.catalog import DEFAULT_CATALOG
from provisioner.clients.provider import VirtualNetworkInfo
from provisioner.errors import TransientProviderError
from provisioner.services.validation import (
    CONFIGURATION_OK,
    PROFILE_ERROR,
    PROFILE_MISSING,
    TemplateValidator,
    check_admin_password,
    check_image_parameters,
    check_jvm_options,
    verify_configuration,
)
from provisioner.templates import ProviderProfile
from tests.fakes import FakeProvider, instant, no_sleep


PROFILE = ProviderProfile(
    subscription_id="sub",
    tenant_id="tenant",
    client_id="client",
    client_secret="secret",
)


def valid_fields(**overrides) -> dict:
    fields = {
        "name": "linux-build",
        "resource_group": "rg",
        "location": "West Europe",
        "vm_size": "Standard_D2_v2",
        "image_publisher": "Canonical",
        "image_offer": "UbuntuServer",
        "image_sku": "22_04-lts",
        "image_version": "latest",
        "storage_account": "ciworkers",
        "admin_username": "builder",
        "admin_password": "Sup3r-secret",
        "executors": "2",
        "retention_minutes": "60",
        "jvm_options": "-Xmx1g -Dfoo=bar",
    }
    fields.update(overrides)
    return fields


def make_provider() -> FakeProvider:
    provider = FakeProvider()
    provider.images.add(("Canonical", "UbuntuServer", "22_04-lts"))
    provider.vnets.append(VirtualNetworkInfo(name="ci-net", resource_group="rg", subnets=["agents"]))
    return provider


def make_validator(provider, timeout_sec: float = 5) -> TemplateValidator:
    return TemplateValidator(lambda _profile: provider, DEFAULT_CATALOG, timeout_sec=timeout_sec)


def test_valid_template_has_no_findings():
    assert make_validator(make_provider()).validate(PROFILE, valid_fields()) == []


def test_image_uri_with_reference_is_rejected():
    finding = check_image_parameters(
        valid_fields(image="https://ciworkers.blob.core.windows.net/i/a.vhd", os_type="Linux")
    )
    assert finding.startswith("Image reference is not valid")


def test_image_uri_alone_is_accepted():
    fields = valid_fields(
        image="https://ciworkers.blob.core.windows.net/i/a.vhd",
        os_type="Linux",
        image_publisher="",
        image_offer="",
        image_sku="",
    )
    assert check_image_parameters(fields) is None


def test_incomplete_reference_is_rejected():
    assert check_image_parameters(valid_fields(image_sku="")) is not None
    assert check_image_parameters(valid_fields(image="not a uri", os_type="Linux", image_publisher="", image_offer="", image_sku="")) == "Image URI is not valid"


def test_image_parameter_combinations():
    blank = dict(image="", os_type="", image_publisher="", image_offer="", image_sku="", image_version="")
    assert check_image_parameters(blank)

    reference = dict(blank, image_publisher="p", image_offer="o", image_sku="s", image_version="1.0")
    assert check_image_parameters(reference) is None

    custom = dict(blank, image="https://acct.blob.core/vhd.vhd", os_type="Linux")
    assert check_image_parameters(custom) is None


def test_password_rules():
    assert check_admin_password({"admin_password": ""}) == "Admin password is required"
    assert check_admin_password({"admin_password": "short1A"}) is not None
    assert check_admin_password({"admin_password": "alllowercase"}) is not None
    assert check_admin_password({"admin_password": "lower-and-1"}) is None


def test_jvm_options_rules():
    assert check_jvm_options({"jvm_options": ""}) is None
    assert check_jvm_options({"jvm_options": "Xmx1g"}) is not None


def test_field_checks_run_in_order():
    fields = valid_fields(executors="0", retention_minutes="-1", location="Atlantis")
    findings = make_validator(make_provider()).validate(PROFILE, fields)
    assert findings[0] == "Number of executors must be a positive integer"
    assert findings[1] == "Retention time must be zero or a positive integer"
    assert "Atlantis" in findings[2]


def test_fail_fast_returns_first_finding():
    fields = valid_fields(executors="", retention_minutes="")
    findings = make_validator(make_provider()).validate(PROFILE, fields, fail_fast=True)
    assert findings == ["Number of executors is required"]


def test_subnet_requires_virtual_network():
    findings = make_validator(make_provider()).validate(PROFILE, valid_fields(subnet="agents"))
    assert findings == ["Virtual network name is required when a subnet is given"]


def test_virtual_network_and_subnet_lookup():
    validator = make_validator(make_provider())
    assert validator.validate(PROFILE, valid_fields(virtual_network="CI-NET", subnet="agents")) == []
    assert validator.validate(PROFILE, valid_fields(virtual_network="ci-net", subnet="other")) == [
        "Subnet other not found in virtual network ci-net"
    ]
    assert validator.validate(PROFILE, valid_fields(virtual_network="missing")) == [
        "Virtual network missing not found"
    ]


def test_custom_image_must_live_in_storage_account():
    fields = valid_fields(
        image="https://otheraccount.blob.core.windows.net/i/a.vhd",
        os_type="Linux",
        image_publisher="",
        image_offer="",
        image_sku="",
    )
    findings = make_validator(make_provider()).validate(PROFILE, fields)
    assert len(findings) == 1
    assert "storage account" in findings[0]


def test_latest_version_resolves_to_newest():
    provider = make_provider()
    assert make_validator(provider).validate(PROFILE, valid_fields(image_version="Latest")) == []
    assert provider.called("get_image")[0][-1] == ""


def test_unknown_image_is_reported():
    findings = make_validator(make_provider()).validate(PROFILE, valid_fields(image_sku="18_04-lts"))
    assert len(findings) == 1
    assert findings[0].startswith("Image reference is not valid")


def test_slow_network_check_times_out_alone():
    provider = make_provider()
    provider.vnet_lookup_gate = threading.Event()
    try:
        findings = make_validator(provider, timeout_sec=0.2).validate(
            PROFILE, valid_fields(virtual_network="ci-net")
        )
    finally:
        provider.vnet_lookup_gate.set()
    assert findings == ["Validation of virtual network timed out after 0.2s"]


def test_provider_load_failure_is_a_finding():
    def loader(_profile):
        raise RuntimeError("bad credentials")

    findings = TemplateValidator(loader, DEFAULT_CATALOG).validate(PROFILE, valid_fields())
    assert findings == [f"{PROFILE_ERROR}: bad credentials"]


def test_verify_configuration_outcomes():
    provider = make_provider()
    assert verify_configuration(ProviderProfile(), lambda _p: provider) == PROFILE_MISSING
    assert verify_configuration(PROFILE, lambda _p: provider) == CONFIGURATION_OK

    provider.fail(
        "list_storage_accounts",
        *(TransientProviderError("Timeout", "slow") for _ in range(3)),
    )
    message = verify_configuration(PROFILE, lambda _p: provider, instant(3), sleep=no_sleep)
    assert message.startswith("Failure:")
    assert len(provider.called("list_storage_accounts")) == 4

    def broken(_profile):
        raise RuntimeError("tenant not found")

    assert verify_configuration(PROFILE, broken) == PROFILE_ERROR
