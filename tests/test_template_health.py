import json

from provisioner.catalog import DEFAULT_CATALOG
from provisioner.db import Base, SessionLocal, engine
from provisioner.models import Event
from provisioner.services.template_health import TemplateHealth
from provisioner.services.validation import TemplateValidator
from provisioner.templates import FailureStage, ProviderProfile, WorkerTemplate
from tests.fakes import FakeProvider, RecordingQueue


PROFILE = ProviderProfile(
    subscription_id="sub", tenant_id="tenant", client_id="client", client_secret="secret"
)


def make_template(**overrides) -> WorkerTemplate:
    values = dict(
        name="linux-build",
        resource_group="rg",
        location="West Europe",
        vm_size="Standard_D2_v2",
        image_publisher="Canonical",
        image_offer="UbuntuServer",
        image_sku="22_04-lts",
        admin_username="builder",
        admin_password="Sup3r-secret",
    )
    values.update(overrides)
    return WorkerTemplate(**values)


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def make_health(provider, run=True):
    validator = TemplateValidator(lambda _p: provider, DEFAULT_CATALOG, timeout_sec=5)
    queue = RecordingQueue(run=run)
    return TemplateHealth(validator, lambda: PROFILE, queue), queue


def test_failure_triggers_revalidation():
    provider = FakeProvider()
    provider.images.add(("Canonical", "UbuntuServer", "22_04-lts"))
    health, queue = make_health(provider)

    health.report_failure(make_template(), "CONN_FAIL: refused", FailureStage.POST_PROVISIONING)

    assert queue.submitted == ["revalidate:linux-build"]
    status = health.status("linux-build")
    assert status.verified is True
    assert status.failures[0].stage == FailureStage.POST_PROVISIONING

    db = SessionLocal()
    types = [e.event_type for e in db.query(Event).order_by(Event.id).all()]
    db.close()
    assert types == ["template.failure", "template.revalidated"]


def test_revalidation_records_findings():
    health, _queue = make_health(FakeProvider())
    findings = health.revalidate(make_template())
    assert findings and findings[0].startswith("Image reference is not valid")
    status = health.status("linux-build")
    assert status.verified is False
    assert status.findings == findings

    db = SessionLocal()
    event = db.query(Event).filter(Event.event_type == "template.revalidated").one()
    db.close()
    assert json.loads(event.payload_json)["verified"] is False


def test_failures_are_bounded():
    health, _queue = make_health(FakeProvider(), run=False)
    template = make_template()
    for index in range(25):
        health.report_failure(template, f"failure {index}", FailureStage.PROVISIONING)
    failures = health.status("linux-build").failures
    assert len(failures) == health.max_failures
    assert failures[-1].message == "failure 24"
    assert health.status("linux-build").verified is None
