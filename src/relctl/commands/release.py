"""Release commands - submit, run, approve, rollback, inspect."""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from relctl.core.async_utils import run_sync
from relctl.core.context import RelCtlContext, pass_context
from relctl.core.exceptions import RelCtlError
from relctl.core.output import OutputFormat
from relctl.release.models import Release, ReleaseStatus

T = TypeVar("T")


def _run_engine(ctx: RelCtlContext, action: Callable[[], Awaitable[T]]) -> T:
    """Run an engine coroutine and release its network clients afterwards."""

    async def runner() -> T:
        try:
            return await action()
        finally:
            await ctx.engine.close()

    return run_sync(runner())


def _release_row(ctx: RelCtlContext, release: Release) -> dict[str, Any]:
    status = release.status.value
    if ctx.output_format == OutputFormat.TABLE:
        status = ctx.output.print_status(status)
    return {
        "ID": release.id,
        "Target": release.target_id,
        "Version": release.version,
        "Status": status,
        "Strategy": release.policy.strategy.value if release.policy else "-",
        "Updated": release.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        "Message": release.message,
    }


def _report(ctx: RelCtlContext, release: Release) -> None:
    status = release.status
    if status == ReleaseStatus.PROMOTED:
        ctx.output.print_success(f"Release {release.id} promoted on {release.target_id}")
    elif status == ReleaseStatus.ROLLED_BACK:
        ctx.output.print_warning(f"Release {release.id} rolled back: {release.message}")
    elif status == ReleaseStatus.FAILED:
        ctx.output.print_error(f"Release {release.id} failed: {release.message}")
        if release.remediation:
            ctx.output.print_panel(release.remediation, title="Remediation", style="red")
    else:
        ctx.output.print_info(f"Release {release.id} is {status.value}")


@click.command("submit")
@click.argument("target")
@click.argument("artifact_ref")
@click.option("--commit", "source_commit", required=True, help="Source commit of the build")
@click.option("--version", "version", help="Release version (defaults to the artifact's)")
@pass_context
def submit(
    ctx: RelCtlContext,
    target: str,
    artifact_ref: str,
    source_commit: str,
    version: str | None,
) -> None:
    """Submit a release for a target without running it.

    \b
    Examples:
        relctl submit web-prod sha256:3f5a... --commit 9c1e2d4
    """
    try:
        release_id = _run_engine(
            ctx, lambda: ctx.engine.submit_release(target, artifact_ref, source_commit, version)
        )
    except RelCtlError as e:
        ctx.output.print_error(f"Submit failed: {e}")
        raise click.Abort()

    if ctx.quiet:
        click.echo(release_id)
    else:
        ctx.output.print_success(f"Submitted release {release_id} for {target}")


@click.command("run")
@click.argument("release_ids", nargs=-1, required=True)
@pass_context
def run(ctx: RelCtlContext, release_ids: tuple[str, ...]) -> None:
    """Drive submitted releases to completion.

    Releases for different targets run concurrently.
    """
    try:
        results = _run_engine(ctx, lambda: ctx.engine.run_many(list(release_ids)))
    except RelCtlError as e:
        ctx.output.print_error(f"Run failed: {e}")
        raise click.Abort()

    failed = False
    for release_id, result in results.items():
        if isinstance(result, Exception):
            ctx.output.print_error(f"Release {release_id}: {result}")
            failed = True
            continue
        _report(ctx, result)
        failed = failed or result.status != ReleaseStatus.PROMOTED

    if failed:
        raise click.Abort()


@click.command("deploy")
@click.argument("target")
@click.argument("artifact_ref")
@click.option("--commit", "source_commit", required=True, help="Source commit of the build")
@click.option("--version", "version", help="Release version (defaults to the artifact's)")
@pass_context
def deploy(
    ctx: RelCtlContext,
    target: str,
    artifact_ref: str,
    source_commit: str,
    version: str | None,
) -> None:
    """Submit a release and run it to completion.

    \b
    Examples:
        relctl deploy web-staging sha256:3f5a... --commit 9c1e2d4
    """
    if ctx.dry_run:
        ctx.log_dry_run("deploy", {"target": target, "artifact": artifact_ref})
        return

    try:
        release = _run_engine(
            ctx, lambda: ctx.engine.deploy(target, artifact_ref, source_commit, version)
        )
    except RelCtlError as e:
        ctx.output.print_error(f"Deploy failed: {e}")
        raise click.Abort()

    _report(ctx, release)
    if release.status != ReleaseStatus.PROMOTED:
        raise click.Abort()


@click.command("status")
@click.argument("release_id", required=False)
@click.option("-t", "--target", "target_id", help="Filter by target")
@click.option("--limit", type=int, default=20, show_default=True, help="Maximum releases to list")
@pass_context
def status(ctx: RelCtlContext, release_id: str | None, target_id: str | None, limit: int) -> None:
    """Show one release in detail, or list recent releases.

    \b
    Examples:
        relctl status
        relctl status 1a2b3c4d
        relctl status --target web-prod
    """
    state = ctx.engine.state

    if not release_id:
        releases = state.list_releases(target_id=target_id, limit=limit)
        ctx.output.print_data([_release_row(ctx, r) for r in releases], title="Releases")
        return

    try:
        release = state.load_release(release_id)
    except RelCtlError as e:
        ctx.output.print_error(f"Failed to get status: {e}")
        raise click.Abort()

    data = release.to_dict()
    if ctx.output_format != OutputFormat.TABLE:
        data["attempts"] = [a.to_dict() for a in state.list_attempts(release_id)]
        ctx.output.print_data(data)
        return

    ctx.output.print_header(f"Release: {release.id}")
    ctx.output.print(f"Target: {release.target_id}")
    ctx.output.print(f"Version: {release.version}")
    ctx.output.print(f"Artifact: {release.artifact_ref}")
    ctx.output.print(f"Commit: {release.source_commit}")
    ctx.output.print(f"Status: {ctx.output.print_status(release.status.value)}")
    if release.policy:
        ctx.output.print(
            f"Strategy: {release.policy.strategy.value} (tier {release.policy.tier}, "
            f"threshold {release.policy.threshold})"
        )
    if release.message:
        ctx.output.print(f"Message: {release.message}")
    if release.remediation:
        ctx.output.print_panel(release.remediation, title="Remediation", style="red")

    transitions = ctx.engine.events.transitions(release_id)
    if transitions:
        ctx.output.print("\nTransitions:")
        for event in transitions:
            ctx.output.print(
                f"  [{event.timestamp.strftime('%H:%M:%S')}] "
                f"{event.from_state.value} -> {event.to_state.value}: {event.reason}"
            )


@click.command("targets")
@pass_context
def targets(ctx: RelCtlContext) -> None:
    """Show configured targets and their live/staged releases."""
    state = ctx.engine.state
    data = []
    for name, descriptor in sorted(ctx.config.targets.items()):
        row = {
            "Target": name,
            "Kind": descriptor.kind,
            "Tier": descriptor.tier or ctx.config.policy.default_tier,
            "Live": "-",
            "Previous": "-",
            "In Flight": "-",
        }
        if state.has_target(name):
            target = state.load_target(name)
            row["Live"] = target.live_release_id or "-"
            row["Previous"] = target.previous_release_id or "-"
            row["In Flight"] = target.in_flight_release_id or "-"
        data.append(row)

    ctx.output.print_data(data, title="Targets")


def _decision_command(name: str, verb: str):
    @click.command(name)
    @click.argument("release_id")
    @click.option("--actor", default="operator", envvar="USER", help="Who made the decision")
    @click.option("--reason", default="", help="Reason recorded with the decision")
    @pass_context
    def command(ctx: RelCtlContext, release_id: str, actor: str, reason: str) -> None:
        engine = ctx.engine
        try:
            if name == "cancel":
                _run_engine(ctx, lambda: engine.cancel(release_id, actor=actor, reason=reason))
                record = engine.state.get_approval(release_id)
            else:
                record = getattr(engine, name)(release_id, actor=actor, reason=reason)
        except RelCtlError as e:
            ctx.output.print_error(f"Failed to {name} release: {e}")
            raise click.Abort()

        if record is not None and record.actor == actor and record.decision.value == verb:
            ctx.output.print_success(f"Release {release_id} {verb}")
        else:
            ctx.output.print_warning(
                f"Release {release_id} already has a decision: "
                f"{record.decision.value if record else 'none'}"
            )

    command.help = f"Record a '{verb}' decision for a release."
    return command


approve = _decision_command("approve", "approved")
reject = _decision_command("reject", "rejected")
cancel = _decision_command("cancel", "cancelled")


@click.command("rollback")
@click.argument("target")
@click.option("--reason", default="", help="Reason recorded in the event log")
@click.option("--actor", default="operator", envvar="USER", help="Who requested the rollback")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def rollback(ctx: RelCtlContext, target: str, reason: str, actor: str, yes: bool) -> None:
    """Roll a target back to its previous release.

    \b
    Examples:
        relctl rollback web-prod --reason "error rate spike"
    """
    if ctx.dry_run:
        ctx.log_dry_run("rollback target", {"target": target})
        return

    if not yes and not ctx.confirm(f"Roll back {target} to its previous release?"):
        ctx.output.print_info("Cancelled")
        return

    try:
        release = _run_engine(
            ctx, lambda: ctx.engine.rollback_target(target, reason=reason, actor=actor)
        )
    except RelCtlError as e:
        ctx.output.print_error(f"Rollback failed: {e}")
        raise click.Abort()

    _report(ctx, release)
    if release.status != ReleaseStatus.ROLLED_BACK:
        raise click.Abort()


@click.command("resume")
@pass_context
def resume(ctx: RelCtlContext) -> None:
    """Continue in-flight releases after a restart."""
    try:
        results = _run_engine(ctx, ctx.engine.resume)
    except RelCtlError as e:
        ctx.output.print_error(f"Resume failed: {e}")
        raise click.Abort()

    if not results:
        ctx.output.print_info("No in-flight releases")
        return

    for release_id, result in results.items():
        if isinstance(result, Exception):
            ctx.output.print_error(f"Release {release_id}: {result}")
        else:
            _report(ctx, result)


@click.command("events")
@click.option("-r", "--release", "release_id", help="Filter by release")
@click.option("-t", "--target", "target_id", help="Filter by target")
@click.option("--stats", is_flag=True, help="Show outcome statistics instead")
@click.option("--days", type=int, default=30, show_default=True, help="Days covered by --stats")
@pass_context
def events(
    ctx: RelCtlContext,
    release_id: str | None,
    target_id: str | None,
    stats: bool,
    days: int,
) -> None:
    """Show the release event log."""
    log = ctx.engine.events

    if stats:
        summary = log.get_stats(days)
        per_target = summary.pop("targets")
        ctx.output.print_data(summary, title=f"Outcomes (last {days} days)")
        if per_target:
            rows = [{"Target": name, **counts} for name, counts in sorted(per_target.items())]
            ctx.output.print_data(rows, title="By target")
        return

    data = [
        {
            "Seq": event.sequence,
            "Time": event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "Release": event.release_id,
            "Target": event.target_id,
            "Kind": event.kind.value,
            "From": event.from_state.value if event.from_state else "-",
            "To": event.to_state.value if event.to_state else (event.marker or "-"),
            "Reason": event.reason,
        }
        for event in log.events(release_id=release_id, target_id=target_id)
    ]
    ctx.output.print_data(data, title="Events")
