"""Orchestration of the VCH debug workflow.

The workflow runs strictly in order::

    VALIDATING -> RESOLVING -> CONFIGURING -> INSPECTING -> SUCCESS

and every failure is terminal. Diagnostics are collected only when the
configure or inspect step fails (including by timeout); earlier failures have
not touched the appliance, so there is nothing to diagnose. Nothing is retried:
each remote call may have side effects, and a caller wanting another attempt
restarts the whole workflow.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

from rich.console import Console

from .context import CancellationToken, WorkflowContext
from .errors import DebugWorkflowError, FailureKind, WorkflowStep, WorkflowTimeout
from .inspector import installer_version, upgrade_status
from .keys import KeyMaterialError, validate_authorized_keys
from .logging import OperationScope
from .models import (
    ApplianceConfig,
    ApplianceEndpoints,
    ApplianceHandle,
    DebugChange,
    DebugRequest,
    DiagnosticBundle,
    TargetSelector,
    WorkflowResult,
    WorkflowState,
)
from .providers.session import VSphereSession

T = TypeVar("T")

FAILURE_STATES: dict[WorkflowStep, WorkflowState] = {
    WorkflowStep.INPUT: WorkflowState.INPUT_FAILED,
    WorkflowStep.VALIDATING: WorkflowState.VALIDATION_FAILED,
    WorkflowStep.RESOLVING: WorkflowState.RESOLUTION_FAILED,
    WorkflowStep.CONFIGURING: WorkflowState.CONFIG_FAILED,
    WorkflowStep.INSPECTING: WorkflowState.INSPECT_FAILED,
}


class Validator(Protocol):
    def validate(self, ctx: WorkflowContext, *, force: bool = False) -> VSphereSession: ...


class Resolver(Protocol):
    def resolve(
        self, ctx: WorkflowContext, session: VSphereSession, selector: TargetSelector
    ) -> ApplianceHandle: ...


class ConfigReader(Protocol):
    def read(
        self, ctx: WorkflowContext, handle: ApplianceHandle, *, step: WorkflowStep = ...
    ) -> ApplianceConfig: ...


class Configurator(Protocol):
    def apply(
        self,
        ctx: WorkflowContext,
        session: VSphereSession,
        handle: ApplianceHandle,
        config: ApplianceConfig,
        *,
        enable_ssh: bool,
        root_password: str | None,
        authorized_key: bytes | None,
    ) -> DebugChange: ...


class EndpointInspector(Protocol):
    def inspect(
        self, ctx: WorkflowContext, session: VSphereSession, handle: ApplianceHandle
    ) -> ApplianceEndpoints: ...


class Collector(Protocol):
    def init_logs(self, appliance_config: ApplianceConfig) -> None: ...

    def add_secret(self, value: str | None) -> None: ...

    def collect(
        self,
        session: VSphereSession | None,
        handle: ApplianceHandle | None = None,
        appliance_config: ApplianceConfig | None = None,
        *,
        reason: str = "",
    ) -> DiagnosticBundle | None: ...


class _Run:
    """Objects owned by a single invocation; never shared across runs."""

    def __init__(self, ctx: WorkflowContext, op: OperationScope | None) -> None:
        self.ctx = ctx
        self.op = op
        self.session: VSphereSession | None = None
        self.handle: ApplianceHandle | None = None
        self.config: ApplianceConfig | None = None
        self.messages: list[str] = []


class DebugWorkflow:
    """Locate, validate, configure and re-inspect a VCH appliance."""

    def __init__(
        self,
        *,
        validator: Validator,
        resolver: Resolver,
        reader: ConfigReader,
        configurator: Configurator,
        inspector: EndpointInspector,
        collector: Collector,
        logger: logging.Logger,
        console: Console | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the collaborators used by every run."""
        self._validator = validator
        self._resolver = resolver
        self._reader = reader
        self._configurator = configurator
        self._inspector = inspector
        self._collector = collector
        self._log = logger
        self._console = console or Console()
        self._clock = clock

    # Public API -----------------------------------------------------
    def run(
        self,
        request: DebugRequest,
        *,
        token: CancellationToken | None = None,
        op: OperationScope | None = None,
    ) -> WorkflowResult:
        """Apply the debug configuration described by *request*."""
        run = _Run(WorkflowContext.start(request.timeout, token=token, clock=self._clock), op)
        self._emit(run, "### Configuring VCH for debug ####")
        self._collector.add_secret(request.root_password)
        try:
            self._check_inputs(request)
            self._locate(run, request)
            self._report_versions(run, upgrade=False)

            change = self._step(
                run,
                WorkflowStep.CONFIGURING,
                "Debug failed",
                lambda: self._configurator.apply(
                    run.ctx,
                    self._session(run),
                    self._handle(run),
                    self._config(run),
                    enable_ssh=request.enable_ssh,
                    root_password=request.root_password or None,
                    authorized_key=request.authorized_key or None,
                ),
            )
            endpoints = self._step(
                run,
                WorkflowStep.INSPECTING,
                "Inspect failed: the debug change likely took effect but could not be confirmed",
                lambda: self._inspector.inspect(run.ctx, self._session(run), self._handle(run)),
            )
            self._report_endpoints(run, endpoints)
            self._emit(run, "Completed successfully")
            return WorkflowResult(
                state=WorkflowState.SUCCESS,
                appliance_id=self._handle(run).reference,
                endpoints=endpoints,
                change=change,
                messages=tuple(run.messages),
            )
        except DebugWorkflowError as exc:
            return self._fail(run, exc)
        finally:
            self._close(run)

    def inspect(
        self,
        request: DebugRequest,
        *,
        token: CancellationToken | None = None,
        op: OperationScope | None = None,
    ) -> WorkflowResult:
        """Report the appliance versions and endpoints without changing anything."""
        run = _Run(WorkflowContext.start(request.timeout, token=token, clock=self._clock), op)
        self._emit(run, "### Inspecting VCH ####")
        try:
            self._check_selector(request.selector)
            self._locate(run, request)
            self._report_versions(run, upgrade=True)
            endpoints = self._step(
                run,
                WorkflowStep.INSPECTING,
                "Inspect failed",
                lambda: self._inspector.inspect(run.ctx, self._session(run), self._handle(run)),
            )
            self._report_endpoints(run, endpoints)
            self._emit(run, "Completed successfully")
            return WorkflowResult(
                state=WorkflowState.SUCCESS,
                appliance_id=self._handle(run).reference,
                endpoints=endpoints,
                messages=tuple(run.messages),
            )
        except DebugWorkflowError as exc:
            return self._fail(run, exc)
        finally:
            self._close(run)

    # Steps ----------------------------------------------------------
    def _check_inputs(self, request: DebugRequest) -> None:
        self._check_selector(request.selector)
        if request.timeout <= 0:
            raise DebugWorkflowError(
                FailureKind.INPUT,
                f"Timeout must be greater than zero. Got {request.timeout:g}.",
                step=WorkflowStep.INPUT,
            )
        if request.authorized_key:
            try:
                validate_authorized_keys(request.authorized_key)
            except KeyMaterialError as exc:
                raise DebugWorkflowError(
                    FailureKind.INPUT,
                    "unable to load public key",
                    step=WorkflowStep.INPUT,
                    cause=exc,
                ) from exc

    @staticmethod
    def _check_selector(selector: TargetSelector) -> None:
        if not selector.is_usable:
            raise DebugWorkflowError(
                FailureKind.INPUT,
                "A VCH must be identified by --id or by both --compute-resource and --name.",
                step=WorkflowStep.INPUT,
            )

    def _locate(self, run: _Run, request: DebugRequest) -> None:
        self._step(
            run,
            WorkflowStep.VALIDATING,
            "Debug cannot continue - failed to create validator",
            lambda: self._open_session(run, request),
        )
        run.handle = self._step(
            run,
            WorkflowStep.RESOLVING,
            f"Failed to get Virtual Container Host {request.selector.describe()}",
            lambda: self._resolver.resolve(run.ctx, self._session(run), request.selector),
        )
        self._emit(run, "")
        self._emit(run, f"VCH ID: {run.handle.reference}")
        run.config = self._step(
            run,
            WorkflowStep.RESOLVING,
            "Failed to get Virtual Container Host configuration",
            lambda: self._reader.read(run.ctx, self._handle(run), step=WorkflowStep.RESOLVING),
        )
        self._collector.init_logs(run.config)

    def _open_session(self, run: _Run, request: DebugRequest) -> VSphereSession:
        # Stored before the post-step check so a late timeout still closes it.
        run.session = self._validator.validate(run.ctx, force=request.force)
        return run.session

    def _step(
        self,
        run: _Run,
        step: WorkflowStep,
        failure_message: str,
        call: Callable[[], T],
    ) -> T:
        """Run *call* as *step*, classifying any failure by the step."""
        run.ctx.check(step)
        self._log.debug("Step %s started.", step.value)
        try:
            value = call()
        except WorkflowTimeout as exc:
            if exc.step is step:
                raise
            raise WorkflowTimeout(step, exc.message) from exc
        except DebugWorkflowError:
            raise
        except Exception as exc:  # noqa: BLE001 - every collaborator failure is classified
            raise DebugWorkflowError(
                FailureKind.for_step(step),
                failure_message,
                step=step,
                cause=exc,
            ) from exc
        try:
            run.ctx.check(step)
        except WorkflowTimeout as exc:
            if step is not WorkflowStep.CONFIGURING:
                raise
            raise WorkflowTimeout(
                step, f"{exc.message} The debug change may already have been applied."
            ) from exc
        if run.op is not None:
            run.op.add_step(f"debug.{step.value}", status="success")
        return value

    def _fail(self, run: _Run, exc: DebugWorkflowError) -> WorkflowResult:
        self._log.error("%s", exc.detail())
        if run.op is not None:
            run.op.add_step(f"debug.{exc.step.value}", status="error", detail=exc.detail())
        bundle: DiagnosticBundle | None = None
        if exc.step.collects_diagnostics:
            bundle = self._collector.collect(
                run.session,
                run.handle,
                run.config,
                reason=exc.detail(),
            )
            if run.op is not None:
                run.op.add_step(
                    "debug.diagnostics",
                    status="success" if bundle is not None else "error",
                    detail=str(bundle.path) if bundle is not None else None,
                )
        return WorkflowResult(
            state=FAILURE_STATES[exc.step],
            appliance_id=run.handle.reference if run.handle is not None else None,
            error=exc,
            diagnostics=bundle,
            messages=tuple(run.messages),
        )

    def _close(self, run: _Run) -> None:
        if run.session is not None:
            run.session.close()

    # Reporting ------------------------------------------------------
    def _report_versions(self, run: _Run, *, upgrade: bool) -> None:
        config = self._config(run)
        installer = installer_version()
        self._emit(run, "")
        self._emit(run, f"Installer version: {installer.short_version()}")
        self._emit(run, f"VCH version: {config.version.short_version()}")
        if upgrade:
            self._emit(run, f"VCH upgrade status: {upgrade_status(installer, config.version)}")

    def _report_endpoints(self, run: _Run, endpoints: ApplianceEndpoints) -> None:
        self._emit(run, "")
        for line in endpoints.lines():
            self._emit(run, line)

    def _emit(self, run: _Run, line: str) -> None:
        run.messages.append(line)
        self._console.print(line, markup=False, highlight=False)
        if line:
            self._log.info("%s", line)

    # Accessors for state established by earlier steps ---------------
    @staticmethod
    def _session(run: _Run) -> VSphereSession:
        assert run.session is not None
        return run.session

    @staticmethod
    def _handle(run: _Run) -> ApplianceHandle:
        assert run.handle is not None
        return run.handle

    @staticmethod
    def _config(run: _Run) -> ApplianceConfig:
        assert run.config is not None
        return run.config


__all__ = ["DebugWorkflow", "FAILURE_STATES"]
