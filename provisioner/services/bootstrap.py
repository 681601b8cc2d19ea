import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from provisioner.clients.ssh import ConnectErrorKind, classify_connect_error
from provisioner.errors import (
    BootstrapFailure,
    InitScriptFailure,
    OperationCancelled,
    RuntimeMissing,
)
from provisioner.metrics import metrics
from provisioner.models import CleanupReason
from provisioner.records import VMRecord
from provisioner.retry import FixedRetryStrategy, RetryStrategy, run_with_retry
from provisioner.services.lifecycle import VMLifecycleOrchestrator
from provisioner.templates import FailureHook, FailureStage, WorkerTemplate


logger = logging.getLogger(__name__)
launch_logger = logging.getLogger("provisioner.launch")

REMOTE_INIT_SCRIPT = "init.sh"
INIT_MARKER = "~/.worker-init-done"
REMOTE_AGENT_PATH = "agent.jar"
ELEVATION_PREFIX = "sudo -S -p '' "
# never a real exit status, so callers can tell it from a failing command
TRANSPORT_FAILURE_EXIT = -1


class LaunchPhase(str, Enum):
    CHECK_ALIVE = "CHECK_ALIVE"
    CONNECT = "CONNECT"
    RUN_INIT_SCRIPT = "RUN_INIT_SCRIPT"
    CHECK_RUNTIME = "CHECK_RUNTIME"
    TRANSFER_AGENT = "TRANSFER_AGENT"
    EXEC_AGENT = "EXEC_AGENT"
    ATTACHED = "ATTACHED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


class CommandChannel(Protocol):
    def write_input(self, data: bytes) -> None: ...

    def drain(self, sink: Callable[[str, str], None]) -> None: ...

    def exit_status(self) -> int: ...

    def close(self) -> None: ...


class RemoteSession(Protocol):
    def exec(self, command: str) -> CommandChannel: ...

    def upload(self, data: bytes, remote_path: str) -> None: ...

    def close(self) -> None: ...


SessionFactory = Callable[[str, int, str, str], RemoteSession]
AgentAttacher = Callable[[VMRecord, CommandChannel, RemoteSession], None]


class LaunchLog:
    def __init__(self, vm_name: str):
        self.vm_name = vm_name
        self.lines: list[str] = []
        self._lock = threading.Lock()

    def write(self, stream: str, line: str) -> None:
        with self._lock:
            self.lines.append(line)
        launch_logger.info("[%s %s] %s", self.vm_name, stream, line)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self.lines)


@dataclass
class LaunchResult:
    phase: LaunchPhase
    reason: CleanupReason | None = None
    detail: str | None = None
    visited: list[LaunchPhase] = field(default_factory=list)

    @property
    def attached(self) -> bool:
        return self.phase == LaunchPhase.ATTACHED


class AgentChannels:
    """Open agent channels, kept until the worker goes away."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, tuple[CommandChannel, RemoteSession]] = {}

    def attach(
        self, record: VMRecord, channel: CommandChannel, session: RemoteSession
    ) -> None:
        with self._lock:
            previous = self._channels.pop(record.name, None)
            self._channels[record.name] = (channel, session)
        if previous is not None:
            _close_quietly(*previous)
        logger.info("agent channel attached vm=%s", record.name)

    def is_attached(self, vm_name: str) -> bool:
        with self._lock:
            return vm_name in self._channels

    def detach(self, vm_name: str) -> None:
        with self._lock:
            entry = self._channels.pop(vm_name, None)
        if entry is not None:
            _close_quietly(*entry)
            logger.info("agent channel closed vm=%s", vm_name)


def _close_quietly(*closeables) -> None:
    for item in closeables:
        try:
            item.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("ignoring close failure: %s", exc)


def execute_remote_command(
    session: RemoteSession,
    command: str,
    log: LaunchLog,
    elevated: bool = False,
    password: str | None = None,
) -> int:
    final_command = f"{ELEVATION_PREFIX}{command}" if elevated else command
    logger.info("executing remote command vm=%s command=%s", log.vm_name, command)
    channel = None
    try:
        channel = session.exec(final_command)
        if elevated:
            channel.write_input(f"{password or ''}\n".encode("utf-8"))
        channel.drain(log.write)
        return channel.exit_status()
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "transport failure vm=%s command=%s: %s", log.vm_name, command, exc
        )
        return TRANSPORT_FAILURE_EXIT
    finally:
        if channel is not None:
            _close_quietly(channel)


def agent_command(jvm_options: str) -> str:
    parts = ["java", *jvm_options.split(), "-jar", REMOTE_AGENT_PATH]
    return " ".join(parts)


class RemoteBootstrapLauncher:
    def __init__(
        self,
        orchestrator: VMLifecycleOrchestrator,
        session_factory: SessionFactory,
        payload_source: Callable[[], bytes],
        attach_agent: AgentAttacher,
        failure_hook: FailureHook | None = None,
        connect_strategy: RetryStrategy | None = None,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.payload_source = payload_source
        self.attach_agent = attach_agent
        self.failure_hook = failure_hook
        self.connect_strategy = connect_strategy or FixedRetryStrategy(
            max_attempts=6, delay_sec=60
        )
        self.cancel = cancel
        self.sleep = sleep

    def launch(self, record: VMRecord, template: WorkerTemplate) -> LaunchResult:
        visited: list[LaunchPhase] = [LaunchPhase.CHECK_ALIVE]
        log = LaunchLog(record.name)
        metrics.inc("launch_attempts_total")
        logger.info("launching worker vm=%s template=%s", record.name, template.name)

        try:
            alive = self.orchestrator.is_alive_or_healthy(record)
        except Exception as exc:  # noqa: BLE001
            logger.info("status check failed vm=%s, trying anyway: %s", record.name, exc)
            alive = True
        if not alive:
            logger.info("vm %s is shut down or being deleted, not connecting", record.name)
            visited.append(LaunchPhase.ABANDONED)
            return LaunchResult(LaunchPhase.ABANDONED, visited=visited)

        # keep the reaper off while we try
        record.retain()

        visited.append(LaunchPhase.CONNECT)
        try:
            session = self._connect(record)
        except OperationCancelled as exc:
            logger.info("launch cancelled vm=%s: %s", record.name, exc)
            visited.append(LaunchPhase.ABANDONED)
            return LaunchResult(LaunchPhase.ABANDONED, detail=str(exc), visited=visited)
        except Exception as exc:  # noqa: BLE001
            return self._connect_failed(record, template, exc, visited)

        try:
            self._run_init_script(session, record, template, log, visited)

            visited.append(LaunchPhase.CHECK_RUNTIME)
            if execute_remote_command(session, template.runtime_probe_command, log) != 0:
                raise RuntimeMissing(
                    record.name,
                    f"{template.runtime_probe_command!r} failed; the init script must install the runtime",
                )

            visited.append(LaunchPhase.TRANSFER_AGENT)
            session.upload(self.payload_source(), REMOTE_AGENT_PATH)

            visited.append(LaunchPhase.EXEC_AGENT)
            command = agent_command(template.jvm_options)
            logger.info("starting agent vm=%s command=%s", record.name, command)
            channel = session.exec(command)
            try:
                self.attach_agent(record, channel, session)
            except Exception:
                _close_quietly(channel)
                raise
        except BootstrapFailure as exc:
            return self._fail(
                record, template, session, CleanupReason(exc.reason), str(exc), visited
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("launch failed vm=%s", record.name)
            return self._fail(
                record, template, session, CleanupReason.LAUNCH_FAILED, str(exc), visited
            )

        # a machine queued for deletion that connects again is kept
        record.clear_cleanup_action()
        visited.append(LaunchPhase.ATTACHED)
        metrics.inc("launches_attached_total")
        logger.info("worker attached vm=%s", record.name)
        return LaunchResult(LaunchPhase.ATTACHED, visited=visited)

    def _connect(self, record: VMRecord) -> RemoteSession:
        if not record.public_address:
            raise ConnectionRefusedError(f"vm {record.name} has no public address")
        return run_with_retry(
            lambda: self.session_factory(
                record.public_address or "",
                record.ssh_port,
                record.admin_username,
                record.admin_password,
            ),
            self.connect_strategy,
            cancel=self.cancel,
            describe=f"ssh connect {record.name}",
            sleep=self.sleep,
        )

    def _connect_failed(
        self,
        record: VMRecord,
        template: WorkerTemplate,
        exc: Exception,
        visited: list[LaunchPhase],
    ) -> LaunchResult:
        kind = classify_connect_error(exc)
        if kind == ConnectErrorKind.UNKNOWN_HOST:
            logger.error(
                "unknown host vm=%s, the machine may already be deleted: %s",
                record.name,
                exc,
            )
            record.mark_for_deletion(CleanupReason.VM_GONE)
            visited.append(LaunchPhase.ABANDONED)
            return LaunchResult(
                LaunchPhase.ABANDONED,
                reason=CleanupReason.VM_GONE,
                detail=str(exc),
                visited=visited,
            )
        if kind == ConnectErrorKind.AUTH:
            logger.error(
                "authentication failed vm=%s, image may not allow password login",
                record.name,
            )
            reason = CleanupReason.AUTH_FAIL
        else:
            logger.error("could not connect vm=%s: %s", record.name, exc)
            reason = CleanupReason.CONN_FAIL
        return self._fail(record, template, None, reason, str(exc), visited)

    def _run_init_script(
        self,
        session: RemoteSession,
        record: VMRecord,
        template: WorkerTemplate,
        log: LaunchLog,
        visited: list[LaunchPhase],
    ) -> None:
        if not template.init_script.strip():
            return
        if execute_remote_command(session, f"test -e {INIT_MARKER}", log) == 0:
            logger.info("init script already ran on vm=%s", record.name)
            return

        visited.append(LaunchPhase.RUN_INIT_SCRIPT)
        session.upload(template.init_script.encode("utf-8"), REMOTE_INIT_SCRIPT)
        exit_status = execute_remote_command(
            session,
            f"sh {REMOTE_INIT_SCRIPT}",
            log,
            elevated=template.execute_init_as_root,
            password=record.admin_password,
        )
        execute_remote_command(session, f"touch {INIT_MARKER}", log)
        if exit_status == 0:
            logger.info("init script succeeded vm=%s", record.name)
            return
        if template.discard_on_init_failure:
            raise InitScriptFailure(
                record.name, f"init script exited with status {exit_status}"
            )
        logger.warning(
            "init script failed vm=%s exit=%s, continuing", record.name, exit_status
        )

    def _fail(
        self,
        record: VMRecord,
        template: WorkerTemplate,
        session: RemoteSession | None,
        reason: CleanupReason,
        message: str,
        visited: list[LaunchPhase],
    ) -> LaunchResult:
        if session is not None:
            _close_quietly(session)
        record.mark_for_deletion(reason)
        visited.append(LaunchPhase.FAILED)
        metrics.inc("launches_failed_total")
        logger.error("launch failed vm=%s reason=%s: %s", record.name, reason.value, message)
        if self.failure_hook is not None:
            try:
                self.failure_hook.report_failure(
                    template, f"{reason.value}: {message}", FailureStage.POST_PROVISIONING
                )
            except Exception:  # noqa: BLE001
                logger.exception("failure hook raised template=%s", template.name)
        return LaunchResult(
            LaunchPhase.FAILED, reason=reason, detail=message, visited=visited
        )
