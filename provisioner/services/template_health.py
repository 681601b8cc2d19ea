import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from provisioner.db import session_scope
from provisioner.repositories import now_utc, write_event
from provisioner.services.validation import TemplateValidator
from provisioner.tasks import BackgroundTaskQueue
from provisioner.templates import FailureStage, ProviderProfile, WorkerTemplate


logger = logging.getLogger(__name__)


@dataclass
class TemplateFailure:
    message: str
    stage: FailureStage
    at: datetime


@dataclass
class TemplateStatus:
    name: str
    verified: bool | None = None
    findings: list[str] = field(default_factory=list)
    failures: list[TemplateFailure] = field(default_factory=list)
    checked_at: datetime | None = None


class TemplateHealth:
    """Collects provisioning failures per template and re-checks templates.

    Failures are fire-and-forget for the reporter; re-validation runs on the
    background queue and only its latest findings are kept.
    """

    max_failures = 20

    def __init__(
        self,
        validator: TemplateValidator,
        profile_source: Callable[[], ProviderProfile],
        queue: BackgroundTaskQueue,
    ):
        self.validator = validator
        self.profile_source = profile_source
        self.queue = queue
        self._lock = threading.Lock()
        self._status: dict[str, TemplateStatus] = {}

    def _entry(self, name: str) -> TemplateStatus:
        entry = self._status.get(name)
        if entry is None:
            entry = TemplateStatus(name=name)
            self._status[name] = entry
        return entry

    def report_failure(
        self, template: WorkerTemplate, message: str, stage: FailureStage
    ) -> None:
        logger.warning(
            "template failure template=%s stage=%s: %s", template.name, stage.value, message
        )
        with self._lock:
            entry = self._entry(template.name)
            entry.failures.append(TemplateFailure(message, stage, now_utc()))
            del entry.failures[: -self.max_failures]
            entry.verified = None
        with session_scope() as session:
            write_event(
                session,
                "template.failure",
                {"stage": stage.value, "message": message},
                template_name=template.name,
            )
        self.queue.submit(
            f"revalidate:{template.name}", lambda: self.revalidate(template)
        )

    def revalidate(self, template: WorkerTemplate) -> list[str]:
        findings = self.validator.validate_template(self.profile_source(), template)
        with self._lock:
            entry = self._entry(template.name)
            entry.findings = findings
            entry.verified = not findings
            entry.checked_at = now_utc()
        with session_scope() as session:
            write_event(
                session,
                "template.revalidated",
                {"verified": not findings, "findings": findings},
                template_name=template.name,
            )
        if findings:
            logger.warning(
                "template %s failed validation: %s", template.name, "; ".join(findings)
            )
        return findings

    def status(self, name: str) -> TemplateStatus:
        with self._lock:
            entry = self._entry(name)
            return TemplateStatus(
                name=entry.name,
                verified=entry.verified,
                findings=list(entry.findings),
                failures=list(entry.failures),
                checked_at=entry.checked_at,
            )
