"""Bootstrap state machine: PKI init, CA, DH parameters and server certificate."""

import shutil
from datetime import UTC, datetime
from pathlib import Path

from .config import PKIConfig
from .errors import PartialMaterializationFailure, StepExecutionFailure
from .events import SYSTEM_ACTOR, EventEmitter, EventKind, EventPhase
from .logging_config import LOGGER
from .materialize import Materializer
from .models import (
    Artifact,
    BootstrapResult,
    BootstrapState,
    MaterializationResult,
    StoreProbe,
    ToolkitOutcome,
)
from .pki_store import PKIStore
from .toolkit import Toolkit


def require_success(outcome: ToolkitOutcome, step: str) -> ToolkitOutcome:
    """Raise StepExecutionFailure unless the toolkit call exited 0."""
    if outcome.succeeded:
        return outcome
    raise StepExecutionFailure(step, outcome.exit_code, outcome.stderr, outcome.timed_out)


class BootstrapStateMachine:
    """Advances the PKI store to SERVER_CERT_READY one step at a time.

    Nothing is cached between calls: every run starts from ``probe()`` so a
    crash, a manual edit or a restored backup is picked up where it left the
    store. Failed steps are not rolled back; the next probe resumes from the
    partial state.
    """

    def __init__(
        self,
        config: PKIConfig,
        store: PKIStore,
        toolkit: Toolkit,
        materializer: Materializer,
        events: EventEmitter | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.toolkit = toolkit
        self.materializer = materializer
        self.events = events or EventEmitter()

    def probe(self) -> StoreProbe:
        return self.store.probe(self.config.server_name)

    def state(self) -> BootstrapState:
        return self.probe().state

    def _run(self, step: str, subcommand: str, *args: str, timeout: float | None = None) -> None:
        outcome = self.toolkit.run(
            subcommand,
            args,
            batch=True,
            timeout=timeout if timeout is not None else self.config.command_timeout_seconds,
        )
        require_success(outcome, step)

    def _quarantine_pki_dir(self) -> Path | None:
        """Move the broken store's contents aside, or delete them.

        With quarantine enabled the old contents (including any CA key) are
        kept under ``<root>/pki.broken-<timestamp>`` for operator recovery.
        """
        pki_dir = self.store.pki_dir
        if self.config.self_heal_quarantine:
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
            quarantine = self.store.root / f"pki.broken-{stamp}"
            quarantine.mkdir(parents=True)
            for child in pki_dir.iterdir():
                shutil.move(str(child), str(quarantine / child.name))
            quarantine.chmod(0o700)
            LOGGER.warning("Moved incomplete PKI contents to %s", quarantine)
            return quarantine

        for child in pki_dir.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        LOGGER.warning("Cleared incomplete PKI directory %s", pki_dir)
        return None

    def _initialize(self, probe: StoreProbe, result: BootstrapResult) -> None:
        self.events.emit(
            EventKind.PKI_INITIALIZATION,
            EventPhase.ATTEMPT,
            "system",
            SYSTEM_ACTOR,
            pkiExists=probe.pki_dir_exists,
            pkiDir=str(self.store.pki_dir),
        )
        if probe.needs_repair:
            LOGGER.warning(
                "PKI exists but %s is missing - rebuilding PKI", self.store.config_file.name
            )
            result.quarantine_path = self._quarantine_pki_dir()
            result.repaired = True

        self._run("init-pki", "init-pki")
        result.steps_run.append("init-pki")
        self.events.emit(
            EventKind.PKI_INITIALIZATION,
            EventPhase.SUCCESS,
            "system",
            SYSTEM_ACTOR,
            pkiDir=str(self.store.pki_dir),
            repaired=result.repaired,
        )

    def _build_ca(self, result: BootstrapResult) -> None:
        LOGGER.info("CA certificate not found, running build-ca")
        self.events.emit(EventKind.CA_CREATION, EventPhase.ATTEMPT, "ca")
        self._run("build-ca", "build-ca", "nopass")
        result.steps_run.append("build-ca")
        self.events.emit(
            EventKind.CA_CREATION, EventPhase.SUCCESS, "ca", caFile=str(self.store.ca_cert)
        )

    def _generate_dh(self, result: BootstrapResult) -> None:
        LOGGER.info("Generating DH parameters (this may take a while)")
        self.events.emit(EventKind.DH_GENERATION, EventPhase.ATTEMPT, "dh")
        self._run("gen-dh", "gen-dh", timeout=self.config.dh_timeout_seconds)
        result.steps_run.append("gen-dh")
        self.events.emit(
            EventKind.DH_GENERATION, EventPhase.SUCCESS, "dh", dhFile=str(self.store.dh_params)
        )

    def _issue_server_cert(self, probe: StoreProbe, result: BootstrapResult) -> None:
        name = self.config.server_name
        self.events.emit(EventKind.SERVER_CERTIFICATE, EventPhase.ATTEMPT, name)
        if probe.server_request_exists:
            # Reuse the request left by an interrupted run; a second request
            # for the same name would be rejected by the toolkit
            LOGGER.info("Request exists but certificate does not, signing %s", name)
            self._run("sign-req", "sign-req", "server", name)
            result.steps_run.append("sign-req")
        else:
            LOGGER.info("Generating server certificate for %s", name)
            self._run("build-server-full", "build-server-full", name, "nopass")
            result.steps_run.append("build-server-full")
        self.events.emit(EventKind.SERVER_CERTIFICATE, EventPhase.SUCCESS, name)

    def server_artifacts(self) -> list[Artifact]:
        name = self.config.server_name
        return [
            Artifact("ca", self.store.ca_cert, "ca.crt"),
            Artifact("cert", self.store.issued_cert(name), f"{name}.crt"),
            Artifact("key", self.store.private_key(name), f"{name}.key", private=True),
            Artifact("dh", self.store.dh_params, "dh.pem"),
        ]

    def advance(self) -> BootstrapResult:
        """Drive the store to SERVER_CERT_READY and materialize the server set.

        Returns:
            BootstrapResult with the steps executed by this call

        Raises:
            StepExecutionFailure: If a toolkit step fails or times out
            PartialMaterializationFailure: If a server artifact could not be copied
        """
        result = BootstrapResult(
            state=BootstrapState.NOT_INITIALIZED,
            steps_run=[],
            materialization=MaterializationResult(),
        )
        step = "probe"
        try:
            probe = self.probe()
            LOGGER.info("PKI store %s probed at state %s", self.store.root, probe.state.name)

            if probe.state is BootstrapState.NOT_INITIALIZED:
                step = "init-pki"
                self._initialize(probe, result)
                probe = self.probe()

            if not probe.ca_cert_exists:
                step = "build-ca"
                self._build_ca(result)

            if not probe.dh_params_exist:
                step = "gen-dh"
                self._generate_dh(result)

            if not probe.server_cert_exists:
                step = "server-certificate"
                self._issue_server_cert(probe, result)

            probe = self.probe()
            result.state = probe.state
            if result.state is not BootstrapState.SERVER_CERT_READY:
                # Exit code 0 but the expected files are missing
                raise StepExecutionFailure(step, 0, f"store left at {result.state.name}")
        except StepExecutionFailure as e:
            LOGGER.error("Bootstrap failed at %s: %s", e.step, e)
            self._emit_failure(step, e)
            raise

        step = "materialize"
        result.materialization = self.materializer.materialize(
            self.config.server_name, self.server_artifacts()
        )
        if not result.materialization.ok:
            raise PartialMaterializationFailure(self.config.server_name, result.materialization)

        LOGGER.info("PKI ready; steps run: %s", result.steps_run or "none")
        return result

    def _emit_failure(self, step: str, error: StepExecutionFailure) -> None:
        kind = {
            "init-pki": EventKind.PKI_INITIALIZATION,
            "build-ca": EventKind.CA_CREATION,
            "gen-dh": EventKind.DH_GENERATION,
        }.get(step, EventKind.SERVER_CERTIFICATE)
        self.events.emit(
            kind,
            EventPhase.FAILURE,
            self.config.server_name if kind is EventKind.SERVER_CERTIFICATE else step,
            error=str(error),
            exitCode=error.exit_code,
        )
