"""
CLI interface for kubeseq.

Provides commands to deploy a plan group by group, inspect and validate what
is running, and remove everything a plan created.

Plans are YAML files listing ordered resource groups (see kubeseq.plan).

Exit codes:
    0   success (warnings allowed)
    1   run aborted, a check failed, or configuration error
    130 run cancelled (Ctrl-C)
"""

import json
import signal
from pathlib import Path
from typing import Optional

import click

from kubeseq import __version__
from kubeseq.config import (
    ConfigError,
    KubeseqConfig,
    default_config,
    get_kubeseq_home,
    load_config,
)
from kubeseq.errors import ConfigurationError, KubeseqError, TransportError
from kubeseq.plan import Plan, load_plan
from kubeseq.schemas import RunStatus
from kubeseq.utils import (
    console,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_summary,
    print_warning,
    render_report,
    render_run,
    setup_logging,
)


EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def get_client(cfg: KubeseqConfig):
    """Create the cluster client for a configuration."""
    from kubeseq.cluster.kubernetes import KubernetesClusterClient

    return KubernetesClusterClient.from_config(cfg)


def _require_config(ctx) -> KubeseqConfig:
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Fix the file or run 'kubeseq init --force' to recreate it.", err=True)
        raise SystemExit(EXIT_FAILURE)
    return ctx.obj["config"]


def _load_plan_or_exit(path: Path, cfg: KubeseqConfig) -> Plan:
    try:
        return load_plan(path, default_namespace=cfg.namespace)
    except ConfigurationError as e:
        print_error(f"Invalid plan: {e}")
        raise SystemExit(EXIT_FAILURE)


def _connect_or_exit(cfg: KubeseqConfig, quiet: bool = False):
    try:
        client = get_client(cfg)
        version = client.check_access()
    except (ConfigurationError, TransportError) as e:
        print_error(f"Cannot connect to Kubernetes cluster: {e}")
        raise SystemExit(EXIT_FAILURE)
    if not quiet:
        print_success(f"Kubernetes cluster is accessible ({version})")
    return client


@click.group()
@click.version_option(version=__version__, prog_name="kubeseq")
@click.option(
    "--config-home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Configuration directory (default: $KUBESEQ_HOME or ~/.config/kubeseq)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_home: Optional[Path], verbose: bool):
    """
    kubeseq - Ordered Kubernetes deployment sequencer.

    Apply groups of manifests in order, waiting for each group to become
    ready before the next one starts.
    """
    ctx.ensure_object(dict)
    home = config_home.expanduser() if config_home else get_kubeseq_home()
    ctx.obj["home"] = home

    try:
        cfg = load_config(home / "config.yaml")
    except FileNotFoundError:
        cfg = default_config()
    except ConfigError as e:
        # init can still recreate the file; other commands bail out later
        ctx.obj["config_error"] = str(e)
        cfg = None

    if cfg is not None:
        ctx.obj["config"] = cfg
        setup_logging(
            log_level="DEBUG" if verbose else cfg.log_level,
            log_format=cfg.log_format,
            log_file=Path(cfg.log_file).expanduser() if cfg.log_file else None,
        )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def init(ctx, force: bool):
    """Initialize kubeseq configuration."""
    import yaml

    home: Path = ctx.obj["home"]
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_FAILURE)

    default_cfg = KubeseqConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# KUBESEQ_NAMESPACE=...\n# KUBESEQ_CONTEXT=...\n# KUBECONFIG=...\n")

    click.echo(f"Initialized kubeseq config at {cfg_path}")


@main.command("deploy")
@click.argument("plan_path", metavar="PLAN", type=click.Path(path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the run record as JSON")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def deploy(ctx, plan_path: Path, as_json: bool, yes: bool):
    """Apply a plan group by group."""
    from kubeseq.readiness import ReadinessEvaluator
    from kubeseq.sequencer import CancelToken, Sequencer

    cfg = _require_config(ctx)
    plan = _load_plan_or_exit(plan_path, cfg)

    if not yes:
        click.confirm(
            f"Apply {len(plan.groups)} groups of plan '{plan.name}' to namespace {plan.namespace}?",
            abort=True,
        )

    if not as_json:
        print_banner(f"Deploying {plan.name}")
    client = _connect_or_exit(cfg, quiet=as_json)

    evaluator = ReadinessEvaluator(client, poll_interval=cfg.poll_interval_seconds)
    sequencer = Sequencer(
        client,
        evaluator,
        apply_attempts=cfg.apply_attempts,
        apply_backoff_seconds=cfg.apply_backoff_seconds,
    )

    token = CancelToken()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())
    try:
        run = sequencer.run(plan.groups, plan_name=plan.name, cancel=token)
    except ConfigurationError as e:
        print_error(f"Invalid plan: {e}")
        raise SystemExit(EXIT_FAILURE)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if as_json:
        click.echo(json.dumps(run.to_dict(), indent=2))
    else:
        console.print(render_run(run))
        print_summary(run.passed, run.warned, run.failed)

    if run.status == RunStatus.CANCELLED:
        if not as_json:
            print_warning("Deployment cancelled")
        raise SystemExit(EXIT_CANCELLED)
    if run.status == RunStatus.ABORTED:
        if not as_json:
            print_error("Deployment aborted")
        raise SystemExit(EXIT_FAILURE)
    if not as_json:
        print_success(f"Plan {plan.name} deployed")


@main.command("status")
@click.argument("plan_path", metavar="PLAN", type=click.Path(path_type=Path))
@click.pass_context
def status(ctx, plan_path: Path):
    """Show the objects in the plan's namespace and each group's readiness."""
    from kubeseq.readiness import ReadinessEvaluator
    from kubeseq.validator import Validator

    cfg = _require_config(ctx)
    plan = _load_plan_or_exit(plan_path, cfg)
    client = _connect_or_exit(cfg)

    validator = Validator(client, plan.validation, plan.namespace)
    evaluator = ReadinessEvaluator(client, poll_interval=cfg.poll_interval_seconds)
    try:
        listing = validator.status()
        readiness = [
            (group.name, *evaluator.check(group.readiness_check))
            for group in plan.groups
            if group.readiness_check is not None
        ]
    except KubeseqError as e:
        print_error(f"Status failed: {e}")
        raise SystemExit(EXIT_FAILURE)

    print_banner(f"Deployment Status: {plan.name} ({plan.namespace})")
    for label, items in listing.items():
        click.echo(f"\n{label}:")
        if not items:
            print_warning(f"No {label.lower()} found")
            continue
        for item in items:
            click.echo(f"  {item}")

    if readiness:
        click.echo("\nReadiness:")
        for name, state, detail in readiness:
            label = state.value if state is not None else "pending"
            click.echo(f"  {name}: {label} ({detail or '-'})")


@main.command("validate")
@click.argument("plan_path", metavar="PLAN", type=click.Path(path_type=Path))
@click.argument("mode", type=click.Choice(["full", "quick", "report"]), default="full")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def validate(ctx, plan_path: Path, mode: str, as_json: bool):
    """
    Check a deployed plan.

    MODE is one of:
      full   - every check (default)
      quick  - deployments, services and pod health
      report - detailed cluster report
    """
    from kubeseq.validator import Validator

    cfg = _require_config(ctx)
    plan = _load_plan_or_exit(plan_path, cfg)
    try:
        client = get_client(cfg)
    except ConfigurationError as e:
        print_error(f"Cannot connect to Kubernetes cluster: {e}")
        raise SystemExit(EXIT_FAILURE)
    validator = Validator(client, plan.validation, plan.namespace)

    if mode == "report":
        try:
            cluster_report = validator.report()
        except TransportError as e:
            print_error(f"Cannot connect to Kubernetes cluster: {e}")
            raise SystemExit(EXIT_FAILURE)
        if as_json:
            click.echo(json.dumps(cluster_report.to_dict(), indent=2))
            return
        print_banner("Detailed Kubernetes Cluster Report")
        click.echo(f"Generated at: {cluster_report.generated_at.isoformat()}")
        click.echo(f"Kubernetes Version: {cluster_report.server_version}")
        click.echo(f"Namespace: {cluster_report.namespace}\n")
        for label, count in cluster_report.counts.items():
            click.echo(f"  {label}: {count}")
        for title, lines in (
            ("Services", cluster_report.services),
            ("Ingress", cluster_report.ingresses),
            ("Pods", cluster_report.pods),
        ):
            click.echo(f"\n{title}:")
            for line in lines:
                click.echo(f"  - {line}")
        return

    report = validator.full() if mode == "full" else validator.quick()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        print_banner(f"Validation ({mode}): {plan.name}")
        console.print(render_report(report))
        print_summary(report.passed, report.warnings, report.failed)

    if not report.healthy:
        raise SystemExit(EXIT_FAILURE)


@main.command("cleanup")
@click.argument("plan_path", metavar="PLAN", type=click.Path(path_type=Path))
@click.option("--check", "check_only", is_flag=True, help="Only report remaining and stuck resources")
@click.option("--force", is_flag=True, help="Clear finalizers and delete stuck resources with no grace period")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def cleanup(ctx, plan_path: Path, check_only: bool, force: bool, yes: bool):
    """
    Delete everything a plan created, in reverse order.

    Each group's deletions are awaited (up to deletion_timeout_seconds)
    before the next group is removed. Remaining resources are listed at the
    end. Use --check to only list them and --force for resources stuck
    terminating.
    """
    from kubeseq.cleanup import Cleaner
    from kubeseq.readiness import ReadinessEvaluator

    if check_only and force:
        raise click.UsageError("--check and --force cannot be combined")

    cfg = _require_config(ctx)
    plan = _load_plan_or_exit(plan_path, cfg)

    if check_only:
        question = None
    elif force:
        question = "This will forcefully delete stuck resources. Are you sure?"
    else:
        question = "Are you sure you want to delete all application resources? This action cannot be undone."
    if question and not yes and not click.confirm(question, default=False):
        print_info("Cleanup cancelled.")
        return

    print_banner(f"Cleaning up {plan.name}" if not check_only else f"Remaining resources: {plan.name}")
    client = _connect_or_exit(cfg)
    cleaner = Cleaner(
        client,
        ReadinessEvaluator(client, poll_interval=cfg.poll_interval_seconds),
        delete_attempts=cfg.apply_attempts,
        backoff_seconds=cfg.apply_backoff_seconds,
        deletion_timeout_seconds=cfg.deletion_timeout_seconds,
    )

    try:
        report = None
        if force:
            report = cleaner.force(plan)
        elif not check_only:
            report = cleaner.run(plan)
        if report is not None:
            console.print(render_report(report, title="Force cleanup" if force else "Cleanup"))
            print_summary(report.passed, report.warnings, report.failed)
        remaining = cleaner.check(plan)
    except KubeseqError as e:
        print_error(f"Cleanup failed: {e}")
        raise SystemExit(EXIT_FAILURE)

    console.print(render_report(remaining, title="Remaining resources"))
    if report is not None and not report.healthy:
        raise SystemExit(EXIT_FAILURE)


@main.group("plan")
def plan_group():
    """Inspect plan files."""
    pass


@plan_group.command("show")
@click.argument("plan_path", metavar="PLAN", type=click.Path(path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def show_plan(ctx, plan_path: Path, as_json: bool):
    """Show the groups of a plan without touching the cluster."""
    from rich.table import Table

    cfg = ctx.obj.get("config") or default_config()
    plan = _load_plan_or_exit(plan_path, cfg)

    if as_json:
        click.echo(json.dumps(plan.to_dict(), indent=2))
        return

    table = Table(title=f"Plan {plan.name} (namespace {plan.namespace})")
    table.add_column("#", justify="right")
    table.add_column("Group", style="bold")
    table.add_column("Resources")
    table.add_column("Readiness")
    table.add_column("On failure")
    for index, group in enumerate(plan.groups, start=1):
        readiness = group.readiness_check
        table.add_row(
            str(index),
            group.name,
            "\n".join(group.resource_refs),
            f"{readiness.describe()} {readiness.timeout_seconds}s" if readiness else "-",
            group.on_failure.value,
        )
    console.print(table)


if __name__ == "__main__":
    main()
