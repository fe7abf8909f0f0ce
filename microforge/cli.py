"""microforge command line interface.

Usage:
    microforge init <solution-name>
    microforge add service <name> [--path P] [--depends-on N ...] [--port N]
    microforge add entity <name> --service S [--field Name:type[?] ...]
                          [--has-many Target[:Nav] ...] [--many-to-many Target[:Nav] ...]
    microforge add infra <name> --kind K [--image IMG] [--publish H:C ...]
                         [--env K=V ...] [--probe SPEC] [--timeout S] [--depends-on N ...]
    microforge add dependency <node> <dependency>
    microforge remove service <name>
    microforge graph
    microforge run local [--only NAME ...] [--max-concurrency N]

Exit codes: 0 success, 2 validation/reference/conflict errors, 1 runtime
failures.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from rich.markup import escape
from rich.table import Table

from microforge import __version__
from microforge.config import Config
from microforge.errors import (
    MicroforgeError,
    NotFoundError,
    UnknownReferenceError,
    ValidationError,
)
from microforge.manifest.models import (
    EntityDescriptor,
    FieldDescriptor,
    FieldType,
    InfrastructureKind,
    ProbeDescriptor,
    ProbeProtocol,
    RelationshipDescriptor,
    RelationshipKind,
    RunKind,
    RunSpec,
)
from microforge.manifest.store import ManifestStore
from microforge.orchestrator.graph import DependencyGraph, build_graph
from microforge.orchestrator.state import NodeEvent, NodeStatus
from microforge.orchestrator.supervisor import ProcessSupervisor
from microforge.scaffolder.generator import ScaffoldingEngine, ScaffoldResult
from microforge.utils import (
    console,
    err_console,
    format_duration,
    print_error,
    print_success,
    print_summary_table,
    setup_logging,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_USAGE = 2


# ---------------------------------------------------------------------------
# Argument parsing helpers
# ---------------------------------------------------------------------------


def parse_field(spec: str) -> FieldDescriptor:
    """Parse ``Name:type`` or ``Name:type?`` (nullable); type defaults to string."""
    name, _, type_name = spec.partition(":")
    nullable = type_name.endswith("?")
    type_name = type_name.rstrip("?") or FieldType.STRING.value
    try:
        field_type = FieldType(type_name.lower())
    except ValueError:
        allowed = ", ".join(t.value for t in FieldType)
        raise ValidationError(
            f"Unknown field type '{type_name}' in '{spec}' (allowed: {allowed})",
            name=spec,
            rule="field-type",
        ) from None
    return FieldDescriptor(name=name.strip(), type=field_type, nullable=nullable)


def parse_relationship(spec: str, kind: RelationshipKind) -> RelationshipDescriptor:
    """Parse ``Target`` or ``Target:Navigation``."""
    target, _, navigation = spec.partition(":")
    return RelationshipDescriptor(kind=kind, target=target.strip(), navigation=navigation.strip() or None)


def parse_key_value(spec: str) -> tuple[str, str]:
    key, sep, value = spec.partition("=")
    if not sep or not key:
        raise ValidationError(f"Expected KEY=VALUE, got '{spec}'", name=spec, rule="key-value")
    return key, value


def parse_probe(spec: str, timeout: Optional[float] = None) -> ProbeDescriptor:
    """Parse ``tcp:HOST:PORT``, ``http:URL`` (or a bare URL) and ``exit-code``."""
    if spec == ProbeProtocol.EXIT_CODE.value:
        return ProbeDescriptor(protocol=ProbeProtocol.EXIT_CODE, timeout=timeout)
    if spec.startswith(("http://", "https://")):
        return ProbeDescriptor(protocol=ProbeProtocol.HTTP, address=spec, timeout=timeout)
    protocol, sep, address = spec.partition(":")
    if sep and protocol == ProbeProtocol.TCP.value and address:
        return ProbeDescriptor(protocol=ProbeProtocol.TCP, address=address, timeout=timeout)
    if sep and protocol == ProbeProtocol.HTTP.value and address:
        return ProbeDescriptor(protocol=ProbeProtocol.HTTP, address=address, timeout=timeout)
    raise ValidationError(
        f"Invalid probe '{spec}': expected tcp:HOST:PORT, http:URL or exit-code",
        name=spec,
        rule="probe",
    )


def _global_options() -> argparse.ArgumentParser:
    """Options accepted before or after the subcommand."""
    parent = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    parent.add_argument("--root", help="Solution root directory (default: current directory)")
    parent.add_argument("--config", help="JSON configuration file")
    parent.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: WARNING)",
    )
    parent.add_argument("--verbose", "-v", action="store_true", help="Shortcut for --log-level DEBUG")
    return parent


def build_parser() -> argparse.ArgumentParser:
    common = _global_options()
    parser = argparse.ArgumentParser(
        prog="microforge",
        description="Scaffold .NET microservices and run them locally in dependency order",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
        epilog=(
            "Examples:\n"
            "  microforge init Contoso\n"
            "  microforge add infra db --kind relational-store --probe tcp:localhost:5432\n"
            "  microforge add service people --depends-on db\n"
            "  microforge add entity Person --service people --field FirstName:string\n"
            "  microforge run local\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    init = commands.add_parser("init", parents=[common], help="Create a new solution")
    init.add_argument("solution", help="Solution name, e.g. Contoso or Contoso.Platform")

    # -- add ---------------------------------------------------------------
    add = commands.add_parser("add", help="Add a service, entity, infrastructure node or dependency")
    add_kinds = add.add_subparsers(dest="what", metavar="WHAT", required=True)

    service = add_kinds.add_parser("service", parents=[common], help="Scaffold a new service")
    service.add_argument("name")
    service.add_argument("--path", help="Service root relative to the solution (default: src/Services/<Name>)")
    service.add_argument("--depends-on", nargs="+", default=[], metavar="NODE")
    service.add_argument("--port", type=int, help="HTTP port (default: next free from 5100)")

    entity = add_kinds.add_parser("entity", parents=[common], help="Add an entity to a service")
    entity.add_argument("name")
    entity.add_argument("--service", required=True)
    entity.add_argument("--field", action="append", default=[], metavar="NAME:TYPE[?]")
    entity.add_argument("--has-many", action="append", default=[], metavar="TARGET[:NAV]")
    entity.add_argument("--many-to-many", action="append", default=[], metavar="TARGET[:NAV]")

    infra = add_kinds.add_parser("infra", parents=[common], help="Register an infrastructure node")
    infra.add_argument("name")
    infra.add_argument("--kind", required=True, choices=[k.value for k in InfrastructureKind])
    infra.add_argument("--image", help="Run as a container from this image")
    infra.add_argument("--publish", action="append", default=[], metavar="HOST:CONTAINER")
    infra.add_argument("--env", action="append", default=[], metavar="KEY=VALUE")
    infra.add_argument("--probe", help="tcp:HOST:PORT, http:URL or exit-code")
    infra.add_argument("--timeout", type=float, help="Readiness timeout in seconds")
    infra.add_argument("--depends-on", nargs="+", default=[], metavar="NODE")

    dependency = add_kinds.add_parser("dependency", parents=[common], help="Declare a start dependency")
    dependency.add_argument("node")
    dependency.add_argument("dependency")

    # -- remove ------------------------------------------------------------
    remove = commands.add_parser("remove", help="Unregister a service")
    remove_kinds = remove.add_subparsers(dest="what", metavar="WHAT", required=True)
    remove_service = remove_kinds.add_parser("service", parents=[common], help="Unregister a service")
    remove_service.add_argument("name")

    # -- graph / run -------------------------------------------------------
    commands.add_parser("graph", parents=[common], help="Print the start waves")

    run = commands.add_parser("run", help="Run the solution")
    run_targets = run.add_subparsers(dest="target", metavar="TARGET", required=True)
    local = run_targets.add_parser("local", parents=[common], help="Start every node locally")
    local.add_argument("--only", nargs="+", metavar="NAME", help="Start these nodes and their dependencies")
    local.add_argument("--max-concurrency", type=int, help="Cap on nodes starting at once")

    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Config file (or environment), then command line overrides."""
    config_path = getattr(args, "config", None)
    config = Config.load(Path(config_path)) if config_path else Config.from_env()

    updates: dict = {}
    if getattr(args, "root", None):
        updates["root"] = Path(args.root)
    level = getattr(args, "log_level", None)
    if getattr(args, "verbose", False):
        level = "DEBUG"
    if level:
        updates["logging"] = config.logging.model_copy(update={"level": level})
    if getattr(args, "max_concurrency", None):
        updates["supervisor"] = config.supervisor.model_copy(
            update={"max_concurrency": args.max_concurrency}
        )
    return config.model_copy(update=updates) if updates else config


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _cmd_init(args: argparse.Namespace, config: Config) -> int:
    engine = ScaffoldingEngine(config.root, config)
    result = await engine.init(args.solution)
    _report(result)
    return EXIT_OK


async def _cmd_add(args: argparse.Namespace, config: Config) -> int:
    engine = ScaffoldingEngine(config.root, config)

    if args.what == "service":
        result = await engine.add_service(
            args.name, path=args.path, dependencies=args.depends_on, port=args.port
        )
        _report(result)
    elif args.what == "entity":
        entity = EntityDescriptor(
            name=args.name,
            fields=[parse_field(spec) for spec in args.field],
            relationships=(
                [parse_relationship(s, RelationshipKind.ONE_TO_MANY) for s in args.has_many]
                + [parse_relationship(s, RelationshipKind.MANY_TO_MANY) for s in args.many_to_many]
            ),
        )
        result = await engine.add_entity(args.service, entity)
        _report(result)
    elif args.what == "infra":
        run_spec = None
        if args.image:
            run_spec = RunSpec(
                kind=RunKind.CONTAINER,
                image=args.image,
                ports=args.publish,
                env=dict(parse_key_value(e) for e in args.env),
            )
        probe = parse_probe(args.probe, timeout=args.timeout) if args.probe else None
        engine.add_infrastructure(
            args.name,
            kind=InfrastructureKind(args.kind),
            run=run_spec,
            probe=probe,
            dependencies=args.depends_on,
        )
        print_success(f"Registered infrastructure '{args.name}'")
    elif args.what == "dependency":
        engine.add_dependency(args.node, args.dependency)
        print_success(f"'{args.node}' now depends on '{args.dependency}'")
    return EXIT_OK


async def _cmd_remove(args: argparse.Namespace, config: Config) -> int:
    engine = ScaffoldingEngine(config.root, config)
    engine.remove_service(args.name)
    print_success(f"Removed service '{args.name}' from the manifest (files left on disk)")
    return EXIT_OK


async def _cmd_graph(args: argparse.Namespace, config: Config) -> int:
    manifest = ManifestStore(config.root, config.manifest_filename).load()
    _print_graph(build_graph(manifest))
    return EXIT_OK


async def _cmd_run(args: argparse.Namespace, config: Config) -> int:
    manifest = ManifestStore(config.root, config.manifest_filename).load()
    graph = build_graph(manifest)
    if args.only:
        graph = graph.subgraph(args.only)
    _print_graph(graph)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform's event loop.
            pass

    supervisor = ProcessSupervisor(graph, config, on_event=_render_event)
    try:
        await supervisor.run(stop_event)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        _print_summary(supervisor)
    return EXIT_OK


_HANDLERS = {
    "init": _cmd_init,
    "add": _cmd_add,
    "remove": _cmd_remove,
    "graph": _cmd_graph,
    "run": _cmd_run,
}


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

_STATUS_STYLES = {
    NodeStatus.STARTING: "yellow",
    NodeStatus.READY: "bold green",
    NodeStatus.FAILED: "bold red",
    NodeStatus.STOPPED: "dim",
}


def _render_event(event: NodeEvent) -> None:
    style = _STATUS_STYLES.get(event.current, "")
    detail = f" [dim]{escape(event.detail)}[/dim]" if event.detail else ""
    console.print(
        f"[cyan]wave {event.wave}[/cyan] {escape(event.node)}: "
        f"[{style}]{event.current.value}[/{style}]{detail}"
    )


def _print_graph(graph: DependencyGraph) -> None:
    table = Table(title="Start waves", show_header=True, header_style="bold cyan")
    table.add_column("Wave", justify="right")
    table.add_column("Node", style="bold")
    table.add_column("Kind")
    table.add_column("Depends on")
    for wave_index, wave in enumerate(graph.waves):
        for node in wave:
            table.add_row(
                str(wave_index),
                node.name,
                "service" if node.is_service else "infrastructure",
                ", ".join(node.dependencies) or "-",
            )
    console.print(table)


def _print_summary(supervisor: ProcessSupervisor) -> None:
    rows = {}
    for name, state in supervisor.states.items():
        duration = state.startup_duration
        rows[name] = state.status.value + (f" (ready in {format_duration(duration)})" if duration is not None else "")
    print_summary_table(rows, title="Node status")


def _report(result: ScaffoldResult) -> None:
    print_success(f"{result.description}: {len(result.files)} file(s) written")
    for path in result.files:
        console.print(f"  [dim]{escape(str(path))}[/dim]")


def exit_code_for(exc: MicroforgeError) -> int:
    """2 for problems with the request itself, 1 for runtime failures."""
    if isinstance(exc, (ValidationError, UnknownReferenceError, NotFoundError)):
        return EXIT_USAGE
    return EXIT_RUNTIME


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for ``microforge`` and ``python -m microforge``."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        print_error(f"Cannot load configuration: {exc}")
        return EXIT_USAGE
    setup_logging(config.logging.level, config.logging.format, config.logging.file)

    handler = _HANDLERS[args.command]
    try:
        return asyncio.run(handler(args, config))
    except MicroforgeError as exc:
        print_error(str(exc))
        rule = getattr(exc, "rule", "")
        if rule:
            err_console.print(f"[dim]rule: {escape(rule)}[/dim]")
        logger.debug("Command failed", exc_info=True)
        return exit_code_for(exc)
    except PydanticValidationError as exc:
        print_error(f"Invalid value: {exc}")
        return EXIT_USAGE
    except KeyboardInterrupt:
        print_error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
