"""
stackplan CLI entry point.
"""
import json
import logging
import os
import random
import sys
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from stackplan import __version__, planner
from stackplan.config import Settings, load_settings
from stackplan.detect import detect_format
from stackplan.errors import StackplanError
from stackplan.executor import Executor
from stackplan.expressions import to_plain
from stackplan.models.plan import Action, Operation, Plan
from stackplan.models.resource import Declarations
from stackplan.parsers import cloudformation, terraform
from stackplan.providers.registry import ProviderRegistry
from stackplan.reporters import json_reporter, markdown
from stackplan.store import LocalStateStore

console = Console(stderr=True)

_BANNER = r"""
      _             _          _
  ___| |_ __ _  ___| | ___ __ | | __ _ _ __
 / __| __/ _` |/ __| |/ / '_ \| |/ _` | '_ \
 \__ \ || (_| | (__|   <| |_) | | (_| | | | |
 |___/\__\__,_|\___|_|\_\ .__/|_|\__,_|_| |_|
                        |_|
"""

_JOKES = [
    "It's not DNS. There's no way it's DNS. It was DNS.",
    "CDN propagation: the only progress bar measured in coffee breaks.",
    "prevent_destroy: because 'are you sure?' was never enough.",
    "Idempotent adj. -- did nothing, twice, with confidence.",
    "Certificate validation pending. Please enjoy this complimentary wait.",
]

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "delete": "red",
    "no-op": "dim",
}

_ACTION_SYMBOLS = {
    "create": "+",
    "update": "~",
    "delete": "-",
    "no-op": " ",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]{_BANNER}[/bold cyan]")
    c.print(f"  [dim]v{__version__}[/dim]")

    joke = random.choice(_JOKES)
    c.print(f"  [italic cyan]\"{joke}\"[/italic cyan]\n")


def _setup_logging(verbose: bool, no_color: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True, no_color=no_color), show_path=False)],
        force=True,
    )


def _collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths, skipping hidden directories like .stackplan."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirnames, fnames in os.walk(p):
                dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def _parse_files(file_paths: List[str], variables: Dict[str, str]) -> Declarations:
    decls = Declarations()
    tf_files = []
    for fp in file_paths:
        fmt = detect_format(fp)
        if fmt == "terraform":
            tf_files.append(fp)
        elif fmt == "cloudformation":
            decls.extend(cloudformation.parse_file(fp, variables))
        else:
            logging.getLogger(__name__).debug("skipping unsupported file %s", fp)
    if tf_files:
        # all .tf files form one configuration and share variables and locals
        decls.extend(terraform.parse_files(tf_files, variables))
    return decls


def _parse_vars(values: Tuple[str, ...]) -> Dict[str, str]:
    variables = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--var")
        variables[key.strip()] = value
    return variables


def _build_registry(settings: Settings, decls: Declarations) -> ProviderRegistry:
    registry = ProviderRegistry(settings.providers, default_factory=settings.default_factory)
    for name, options in decls.providers.items():
        registry.configure(name, **options)
    return registry


def _owner() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


def _print_plan_table(plan: Plan, no_color: bool, show_noop: bool = False) -> None:
    """Print a rich plan table to stderr."""
    tbl = Table(title="Destroy Plan" if plan.destroy else "Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=8)
    tbl.add_column("Resource", width=45)
    tbl.add_column("Changes / reason")

    for i, op in enumerate(plan.operations, 1):
        if op.action == Action.NOOP and not show_noop:
            continue
        color = _ACTION_COLORS.get(op.action.value, "") if not no_color else ""
        label = f"{_ACTION_SYMBOLS[op.action.value]} {op.action.value}"
        detail = op.reason
        if op.action == Action.UPDATE and op.changed:
            detail = f"{op.reason}: {', '.join(op.changed)}"
        if op.action == Action.DELETE and op.protected:
            detail = f"[bold red]PROTECTED[/bold red] {detail}"
        tbl.add_row(
            str(i),
            f"[{color}]{label}[/{color}]" if color else label,
            op.address,
            detail,
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _summary_line(plan: Plan) -> str:
    counts = plan.summary()
    return (
        f"Plan: [green]{counts['create']} to create[/green], "
        f"[yellow]{counts['update']} to update[/yellow], "
        f"[red]{counts['delete']} to delete[/red] "
        f"[dim]({counts['no-op']} unchanged)[/dim]"
    )


def _print_outputs(outputs: Dict[str, Dict], no_color: bool) -> None:
    if not outputs:
        return
    c = Console(stderr=True, no_color=no_color)
    c.print("\n[bold]Outputs:[/bold]")
    for name, entry in outputs.items():
        value = "<sensitive>" if entry.get("sensitive") else json.dumps(to_plain(entry["value"]))
        c.print(f"  {name} = {value}")


class _Progress:
    def __init__(self, stderr: Console) -> None:
        self.stderr = stderr

    def __call__(self, kind: str, op: Operation) -> None:
        color = _ACTION_COLORS.get(op.action.value, "")
        if kind == "start":
            self.stderr.print(f"[{color}]{op.address}[/{color}]: {op.action.value} in progress…")
        elif kind == "done":
            self.stderr.print(f"[{color}]{op.address}[/{color}]: {op.action.value} complete")
        elif kind == "skip":
            self.stderr.print(f"[dim]{op.address}: unchanged after upstream apply[/dim]")
        elif kind == "fail":
            self.stderr.print(f"[red]{op.address}: {op.action.value} failed[/red]")


def _prepare(ctx_obj: dict, paths: Tuple[str, ...], var: Tuple[str, ...]):
    """Shared front half of plan/apply/destroy: settings, declarations, validated stack."""
    settings: Settings = ctx_obj["settings"]
    stderr: Console = ctx_obj["stderr"]

    with stderr.status("[bold]Collecting files…"):
        file_paths = _collect_files(paths or (".",))

    if not file_paths:
        stderr.print("[red]No files found.[/red]")
        sys.exit(2)

    with stderr.status(f"[bold]Parsing {len(file_paths)} file(s)…"):
        decls = _parse_files(file_paths, _parse_vars(var))

    registry = _build_registry(settings, decls)
    stack = planner.load(decls.resources, decls.outputs, registry)
    store = LocalStateStore(settings.state_dir, settings.stack, settings.lease_ttl)
    return settings, stack, registry, store


def _fail(exc: StackplanError) -> None:
    console.print(f"[red]Error:[/red] {escape(str(exc))}")
    sys.exit(1)


_COMMON_OPTIONS = [
    click.argument("paths", nargs=-1, type=click.Path()),
    click.option("--var", multiple=True, metavar="NAME=VALUE",
                 help="Set a variable / parameter value (repeatable)."),
    click.option("--refresh/--no-refresh", default=True, show_default=True,
                 help="Read every resource in state from the provider before planning."),
]


def _common(fn):
    for decorator in reversed(_COMMON_OPTIONS):
        fn = decorator(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Settings file (default: ./stackplan.yaml if present).")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.pass_context
def cli(ctx, config_path, no_color, verbose):
    """stackplan: dependency-ordered provisioning for static site stacks."""
    _setup_logging(verbose, no_color)
    try:
        settings = load_settings(config_path)
    except StackplanError as exc:
        _fail(exc)
    ctx.ensure_object(dict)
    ctx.obj.update(settings=settings, no_color=no_color, stderr=Console(stderr=True, no_color=no_color))


@cli.command()
@_common
@click.option("--destroy", is_flag=True, default=False, help="Plan the removal of every resource in state.")
@click.option(
    "--format", "output_format",
    type=click.Choice(["table", "json", "markdown"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the plan report to this file (default: stdout).")
@click.pass_context
def plan(ctx, paths, var, refresh, destroy, output_format, output):
    """
    Show what apply would do, without changing anything.

    PATHS can be files or directories (default: the current directory).
    """
    no_color = ctx.obj["no_color"]
    stderr = ctx.obj["stderr"]
    _print_banner(no_color)
    try:
        settings, stack, registry, store = _prepare(ctx.obj, paths, var)
        with store.lock(_owner(), "plan"):
            snapshot = store.read()
            if refresh:
                with stderr.status("[bold]Refreshing state…"):
                    planner.refresh(snapshot, registry)
            the_plan = planner.diff(stack, snapshot, destroy=destroy)
    except StackplanError as exc:
        _fail(exc)

    source_label = ", ".join(paths or (".",))
    fmt = output_format.lower()
    if fmt == "table":
        _print_plan_table(the_plan, no_color)
        stderr.print(_summary_line(the_plan) if not the_plan.is_empty else "[green]No changes.[/green]")
        report_content = None
    elif fmt == "json":
        report_content = json_reporter.build_report(the_plan, source_label)
    else:
        report_content = markdown.build_report(the_plan, source_label)

    if report_content is not None:
        if output:
            with open(output, "w", encoding="utf-8", newline="\n") as fh:
                fh.write(report_content)
            stderr.print(f"Plan written to [bold]{output}[/bold]")
        else:
            click.echo(report_content)
    sys.exit(0)


def _run(ctx, paths, var, refresh, destroy, auto_approve, parallelism, timeout) -> None:
    no_color = ctx.obj["no_color"]
    stderr = ctx.obj["stderr"]
    _print_banner(no_color)
    try:
        settings, stack, registry, store = _prepare(ctx.obj, paths, var)
        with store.lock(_owner(), "destroy" if destroy else "apply") as lease:
            snapshot = store.read()
            if refresh:
                with stderr.status("[bold]Refreshing state…"):
                    if planner.refresh(snapshot, registry):
                        store.write(snapshot, lease)
            the_plan = planner.diff(stack, snapshot, destroy=destroy)

            if the_plan.is_empty:
                stderr.print("[green]No changes.[/green] Infrastructure matches the declarations.")
            else:
                _print_plan_table(the_plan, no_color)
                stderr.print(_summary_line(the_plan))
                if not auto_approve:
                    click.confirm("Apply these changes?", abort=True, err=True)

            executor = Executor(
                registry,
                store,
                lease,
                parallelism=parallelism or settings.parallelism,
                operation_timeout=timeout or settings.operation_timeout,
                on_event=_Progress(stderr),
            )
            result = executor.execute(the_plan, stack, snapshot)
    except StackplanError as exc:
        _fail(exc)

    counts = result.summary()
    stderr.print(
        f"\n[bold green]{'Destroy' if destroy else 'Apply'} complete![/bold green] "
        f"{counts['create']} created, {counts['update']} updated, {counts['delete']} deleted."
    )
    _print_outputs(result.outputs, no_color)
    sys.exit(0)


_RUN_OPTIONS = [
    click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt."),
    click.option("--parallelism", type=click.IntRange(min=1), default=None,
                 help="Operations on independent branches to run at once."),
    click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None,
                 help="Per-operation wait budget in seconds."),
]


def _run_options(fn):
    for decorator in reversed(_RUN_OPTIONS):
        fn = decorator(fn)
    return fn


@cli.command()
@_common
@_run_options
@click.pass_context
def apply(ctx, paths, var, refresh, auto_approve, parallelism, timeout):
    """Create, update and delete resources so they match the declarations."""
    _run(ctx, paths, var, refresh, False, auto_approve, parallelism, timeout)


@cli.command()
@_common
@_run_options
@click.pass_context
def destroy(ctx, paths, var, refresh, auto_approve, parallelism, timeout):
    """Delete every resource recorded in state."""
    _run(ctx, paths, var, refresh, True, auto_approve, parallelism, timeout)


@cli.command()
@click.argument("name", required=False)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print outputs as JSON.")
@click.pass_context
def output(ctx, name: Optional[str], as_json: bool):
    """Show outputs recorded by the last apply."""
    settings: Settings = ctx.obj["settings"]
    store = LocalStateStore(settings.state_dir, settings.stack, settings.lease_ttl)
    try:
        outputs = store.read().outputs
    except StackplanError as exc:
        _fail(exc)

    if name is not None:
        if name not in outputs:
            _fail(StackplanError(f"output {name!r} not found"))
        value = outputs[name]["value"]
        click.echo(value if isinstance(value, str) and not as_json else json.dumps(value))
        return
    if as_json:
        click.echo(json.dumps(outputs, indent=2))
        return
    for key, entry in outputs.items():
        shown = "<sensitive>" if entry.get("sensitive") else json.dumps(entry["value"])
        click.echo(f"{key} = {shown}")


@cli.group()
def state():
    """Inspect recorded state."""


@state.command("list")
@click.pass_context
def state_list(ctx):
    """List every resource in state."""
    settings: Settings = ctx.obj["settings"]
    store = LocalStateStore(settings.state_dir, settings.stack, settings.lease_ttl)
    try:
        snapshot = store.read()
    except StackplanError as exc:
        _fail(exc)

    tbl = Table(title=f"State: {settings.stack} (serial {snapshot.serial})", header_style="bold")
    tbl.add_column("Resource")
    tbl.add_column("ID")
    tbl.add_column("Provider")
    tbl.add_column("Protected")
    for address, st in sorted(snapshot.resources.items()):
        tbl.add_row(address, st.resource_id, st.provider, "yes" if st.protected else "")
    Console(no_color=ctx.obj["no_color"]).print(tbl)


@cli.command("force-unlock")
@click.argument("lock_id")
@click.pass_context
def force_unlock(ctx, lock_id: str):
    """Remove a stuck state lease left behind by a crashed run."""
    settings: Settings = ctx.obj["settings"]
    store = LocalStateStore(settings.state_dir, settings.stack, settings.lease_ttl)
    try:
        store.force_unlock(lock_id)
    except StackplanError as exc:
        _fail(exc)
    ctx.obj["stderr"].print(f"Lease [bold]{lock_id}[/bold] removed.")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
