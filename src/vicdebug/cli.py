"""Typer-powered command line for ``vic-debug``.

``vic-debug debug`` enables SSH and/or sets the root password on a Virtual
Container Host appliance, then re-inspects it and prints the endpoints an
operator needs. ``vic-debug inspect`` prints the same report without changing
anything.
"""
from __future__ import annotations

import textwrap
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from . import __version__
from .config import AppConfig, ConfigError, TargetConfig, load_config
from .diagnostics import DiagnosticCollector
from .exit_codes import ExitCode
from .inspector import Inspector
from .keys import KeyMaterialError, load_authorized_key
from .logging import OperationScope, StructuredLogger
from .models import DebugRequest, TargetSelector, WorkflowResult
from .providers import (
    ApplianceConfigReader,
    DebugConfigurator,
    EnvironmentValidator,
    TargetResolver,
)
from .workflow import DebugWorkflow

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vic-debug's YAML config file.",
)
TARGET_OPTION = typer.Option(
    None,
    "--target",
    "-t",
    help="REQUIRED. vCenter or ESXi host, optionally as user:password@host/datacenter.",
)
USER_OPTION = typer.Option(None, "--user", "-u", help="User name for the target.")
PASSWORD_OPTION = typer.Option(
    None, "--password", "-p", help="Password for the target user."
)
DATACENTER_OPTION = typer.Option(
    None, "--datacenter", help="Datacenter to search when the target has several."
)
ID_OPTION = typer.Option(
    None, "--id", help="The ID of the Virtual Container Host, e.g. vm-220."
)
COMPUTE_RESOURCE_OPTION = typer.Option(
    None,
    "--compute-resource",
    "-r",
    help="Compute resource path holding the VCH, e.g. myCluster or /dc1/host/myCluster.",
)
NAME_OPTION = typer.Option(
    None, "--name", "-n", help="The name of the Virtual Container Host."
)
TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    help="Time limit in seconds for the whole operation (default 180).",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    "-f",
    help="Continue past an ambiguous datacenter or a VM that does not look like a VCH.",
)
DEBUG_OPTION = typer.Option(
    False, "--debug", "-v", help="Write debug-level detail to the log."
)
ENABLE_SSH_OPTION = typer.Option(
    False,
    "--enable-ssh",
    "--ssh",
    help="Enable SSH server within the appliance VM.",
)
AUTHORIZED_KEY_OPTION = typer.Option(
    None,
    "--authorized-key",
    "--key",
    dir_okay=False,
    help="File with public keys in authorized_keys format to install for root.",
)
ROOTPW_OPTION = typer.Option(
    None,
    "--rootpw",
    "--pw",
    help="Password for the root user on the appliance VM.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Debug access for Virtual Container Host appliances.

        Enables SSH, installs authorized keys and sets the root password on a
        VCH appliance, then reports how to reach it.
        """
    ).strip(),
)


@dataclass(slots=True)
class CliState:
    """Options given to the root callback."""

    config_file: Path | None = None


@dataclass(slots=True)
class TargetOptions:
    """Target and selector flags shared by ``debug`` and ``inspect``."""

    target: str | None
    user: str | None
    password: str | None
    datacenter: str | None
    id: str | None
    compute_resource: str | None
    name: str | None
    timeout: float | None
    force: bool
    debug: bool

    def overrides(self) -> dict[str, object]:
        """Return the config overrides implied by these flags."""
        overrides: dict[str, object] = {
            "target": {
                "url": self.target,
                "user": self.user,
                "password": self.password,
                "datacenter": self.datacenter,
            },
            "timeout": self.timeout,
        }
        if self.debug:
            overrides["logging"] = {"level": "debug"}
        return overrides

    def selector(self) -> TargetSelector:
        """Return the appliance selector from ``--id`` or ``--compute-resource``/``--name``."""
        return TargetSelector(
            id=self.id or "",
            compute_path=self.compute_resource or "",
            display_name=self.name or "",
        )

    def log_args(self, target: TargetConfig) -> dict[str, object]:
        """Return the invocation arguments recorded in the operations log.

        The target is taken from the parsed config so credentials embedded in
        ``--target`` never reach the log.
        """
        return {
            "target": target.host,
            "user": target.user,
            "password": target.password,
            "datacenter": target.datacenter,
            "id": self.id,
            "compute_resource": self.compute_resource,
            "name": self.name,
            "timeout": self.timeout,
            "force": self.force,
        }


def build_workflow(config: AppConfig, logger: StructuredLogger, *, force: bool) -> DebugWorkflow:
    """Compose the vSphere-backed collaborators into a :class:`DebugWorkflow`."""
    log = logger.get_logger()
    reader = ApplianceConfigReader(logger=log, force=force)
    return DebugWorkflow(
        validator=EnvironmentValidator(config.target, logger=log),
        resolver=TargetResolver(logger=log),
        reader=reader,
        configurator=DebugConfigurator(config.guest, logger=log),
        inspector=Inspector(reader, logger=log),
        collector=DiagnosticCollector(config.diagnostics, guest=config.guest, logger=log),
        logger=log,
        console=console,
    )


WorkflowFactory = Callable[..., DebugWorkflow]
_workflow_factory: WorkflowFactory = build_workflow


def _state(ctx: typer.Context) -> CliState:
    state = ctx.obj
    if isinstance(state, CliState):
        return state
    return CliState()


def _fail(message: str, code: ExitCode) -> NoReturn:
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=int(code))


def _load(ctx: typer.Context, options: TargetOptions) -> tuple[AppConfig, StructuredLogger]:
    try:
        config = load_config(config_file=_state(ctx).config_file, overrides=options.overrides())
    except ConfigError as exc:
        _fail(f"Configuration error: {exc}", ExitCode.INPUT)
    logger = StructuredLogger(config.logs_dir, level=config.logging.level)
    return config, logger


def _command_error(op: OperationScope, message: str, *, rc: int) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, rc=rc)
    raise typer.Exit(code=rc)


def _finish(
    op: OperationScope,
    result: WorkflowResult,
    *,
    success_message: str,
    expect_change: bool = False,
) -> None:
    payload = result.to_payload()
    if result.ok:
        changed = result.change.changed if result.change is not None else 0
        if expect_change and not changed:
            op.warning(
                "No debug changes were requested.",
                warnings=["Pass --enable-ssh, --authorized-key or --rootpw to change the VCH."],
                context=payload,
            )
            return
        op.success(success_message, changed=changed, context=payload)
        return

    assert result.error is not None
    message = result.error.detail()
    diagnostics: list[str] = []
    console.print(f"[red]{escape(message)}[/red]")
    if result.diagnostics is not None:
        diagnostics.append(str(result.diagnostics.path))
        console.print(
            f"Diagnostic bundle: {escape(str(result.diagnostics.path))}", soft_wrap=True
        )
    op.error(
        message,
        rc=result.exit_code,
        diagnostics=diagnostics or None,
        context=payload,
    )
    raise typer.Exit(code=result.exit_code)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vic-debug version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"vic-debug {__version__}")
        raise typer.Exit(code=0)

    ctx.obj = CliState(config_file=config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command()
def debug(
    ctx: typer.Context,
    target: str | None = TARGET_OPTION,
    user: str | None = USER_OPTION,
    password: str | None = PASSWORD_OPTION,
    datacenter: str | None = DATACENTER_OPTION,
    id: str | None = ID_OPTION,  # noqa: A002 - mirrors the --id flag
    compute_resource: str | None = COMPUTE_RESOURCE_OPTION,
    name: str | None = NAME_OPTION,
    enable_ssh: bool = ENABLE_SSH_OPTION,
    authorized_key: Path | None = AUTHORIZED_KEY_OPTION,
    rootpw: str | None = ROOTPW_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
    force: bool = FORCE_OPTION,
    debug_output: bool = DEBUG_OPTION,
) -> None:
    """Configure a Virtual Container Host for debug access."""
    options = TargetOptions(
        target=target,
        user=user,
        password=password,
        datacenter=datacenter,
        id=id,
        compute_resource=compute_resource,
        name=name,
        timeout=timeout,
        force=force,
        debug=debug_output,
    )
    config, logger = _load(ctx, options)
    args = options.log_args(config.target)
    args.update(
        {
            "enable_ssh": enable_ssh,
            "authorized_key": str(authorized_key) if authorized_key else None,
            "rootpw": rootpw,
        }
    )
    try:
        with logger.operation(
            "debug",
            args=args,
            target={"kind": "vch", "selector": options.selector().describe()},
        ) as op:
            key_content: bytes | None = None
            if authorized_key is not None:
                try:
                    key_content = load_authorized_key(authorized_key)
                except KeyMaterialError as exc:
                    _command_error(op, f"Unable to load public key: {exc}", rc=int(ExitCode.INPUT))
                op.add_step("debug.authorized_key", status="success", detail=str(authorized_key))

            request = DebugRequest(
                selector=options.selector(),
                enable_ssh=enable_ssh,
                authorized_key=key_content,
                root_password=rootpw,
                timeout=config.timeout,
                force=force,
            )
            workflow = _workflow_factory(config, logger, force=force)
            result = workflow.run(request, op=op)
            _finish(
                op, result, success_message="Debug configuration applied.", expect_change=True
            )
    finally:
        logger.close()


@app.command()
def inspect(
    ctx: typer.Context,
    target: str | None = TARGET_OPTION,
    user: str | None = USER_OPTION,
    password: str | None = PASSWORD_OPTION,
    datacenter: str | None = DATACENTER_OPTION,
    id: str | None = ID_OPTION,  # noqa: A002 - mirrors the --id flag
    compute_resource: str | None = COMPUTE_RESOURCE_OPTION,
    name: str | None = NAME_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
    force: bool = FORCE_OPTION,
    debug_output: bool = DEBUG_OPTION,
) -> None:
    """Report the versions and endpoints of a Virtual Container Host."""
    options = TargetOptions(
        target=target,
        user=user,
        password=password,
        datacenter=datacenter,
        id=id,
        compute_resource=compute_resource,
        name=name,
        timeout=timeout,
        force=force,
        debug=debug_output,
    )
    config, logger = _load(ctx, options)
    try:
        with logger.operation(
            "inspect",
            args=options.log_args(config.target),
            target={"kind": "vch", "selector": options.selector().describe()},
        ) as op:
            request = DebugRequest(
                selector=options.selector(),
                timeout=config.timeout,
                force=force,
            )
            workflow = _workflow_factory(config, logger, force=force)
            result = workflow.inspect(request, op=op)
            _finish(op, result, success_message="Inspected Virtual Container Host.")
    finally:
        logger.close()


def main() -> None:
    """Entrypoint used by the console script."""
    app()


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    main()
