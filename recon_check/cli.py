"""CLI interface for recon-check using Click."""

import json
import logging
import sys
import time
from typing import Optional

import click

from . import __version__
from .artifacts import JobArtifactStore
from .config import DEFAULT_PAGE_SIZE, DEFAULT_SCOPES, RunConfig, SpotCheckConfig
from .errors import ArtifactNotFound, ConfigError
from .limiter import DEFAULT_CONCURRENCY
from .models import Checkpoint, ValidationEvent, now_ms
from .orchestrator import ReconValidator
from .profile_store import ProfileStoreSettings
from .report import RunReport, _colorize, print_progress_line, print_report
from .state import FULL_RUN, SPOT_CHECK_RUN, StateStore

logger = logging.getLogger(__name__)


def _print_error(message: str, details: Optional[str] = None):
    suffix = f": {details}" if details else ""
    click.echo(_colorize(f"Error: {message}{suffix}", "red"), err=True)


def _fmt_ms(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts / 1000))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
@click.option("--state-file", type=click.Path(dir_okay=False), default=None,
              help="State file (default: ~/.recon-check/state.json, or RECON_STATE_FILE)")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx, verbose: bool, state_file: Optional[str]):
    """Reconcile Directory user records against the Profile Store.

    Profile Store credentials are read from RECON_PROFILE_API_KEY,
    RECON_PROFILE_SECRET, RECON_PROFILE_USER_KEY and RECON_PROFILE_DATA_CENTER.

    Examples:

    \b
      recon-check validate --tenant-url https://tenant.example.com ...
      recon-check validate --spot-check 200 --exclude-previous
      recon-check validate --resume
      recon-check serve --port 8080
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = StateStore(state_file)


# -- validate ----------------------------------------------------------------

@main.command()
@click.option("--tenant-url", envvar="RECON_TENANT_URL", required=True,
              help="Directory tenant base URL")
@click.option("--client-id", envvar="RECON_CLIENT_ID", required=True)
@click.option("--client-secret", envvar="RECON_CLIENT_SECRET", required=True)
@click.option("--token-endpoint", envvar="RECON_TOKEN_ENDPOINT", required=True,
              help="OAuth2 token endpoint URL")
@click.option("--scopes", envvar="RECON_SCOPES", default=DEFAULT_SCOPES, show_default=True)
@click.option("--concurrency", type=int, default=DEFAULT_CONCURRENCY, show_default=True,
              help="Concurrent individual profile lookups (clamped to 5-100)")
@click.option("--page-size", type=int, default=DEFAULT_PAGE_SIZE, show_default=True)
@click.option("--query-filter", default="true", show_default=True,
              help="Directory query filter")
@click.option("--max-users", type=int, default=None, help="Stop after this many records")
@click.option("--spot-check", "sample_size", type=int, default=None, metavar="N",
              help="Randomly sample N records instead of a full scan")
@click.option("--exclude-previous", is_flag=True,
              help="With --spot-check, skip records sampled by earlier spot checks")
@click.option("--resume", is_flag=True, help="Continue from the saved checkpoint")
@click.option("--output", type=click.Path(dir_okay=False, writable=True), default=None,
              help="Write the mismatch CSV to this file")
@click.option("--tls-no-verify", is_flag=True, help="Skip TLS certificate verification")
@click.option("--json", "json_output", is_flag=True, help="Print the report as JSON")
@click.pass_obj
def validate(state: StateStore, tenant_url, client_id, client_secret, token_endpoint, scopes,
             concurrency, page_size, query_filter, max_users, sample_size, exclude_previous,
             resume, output, json_output, tls_no_verify):
    """Run a full validation or a spot check."""
    if exclude_previous and not sample_size:
        raise click.UsageError("--exclude-previous requires --spot-check")
    if resume and sample_size:
        raise click.UsageError("--resume cannot be combined with --spot-check")

    resume_kwargs = {}
    if resume:
        checkpoint = state.load_checkpoint(tenant_url)
        if checkpoint is None:
            raise click.UsageError("No saved checkpoint for this tenant")
        if checkpoint.cursor:
            resume_kwargs = {
                "resume_from_cookie": checkpoint.cursor,
                "resume_progress": checkpoint.progress,
                "resume_last_processed_date": checkpoint.last_processed_date,
            }
        else:
            click.echo(_colorize(
                f"Checkpoint is older than 24h; its cursor has expired. Starting a fresh run "
                f"(records were processed up to {checkpoint.last_processed_date}).", "yellow"),
                err=True)
            resume_kwargs = {"resume_last_processed_date": checkpoint.last_processed_date}

    try:
        spot_check = None
        if sample_size:
            excluded = state.previously_checked_ids() if exclude_previous else []
            spot_check = SpotCheckConfig(sample_size, exclude_ids=excluded)
        config = RunConfig(
            tenant_url=tenant_url,
            client_id=client_id,
            client_secret=client_secret,
            token_endpoint=token_endpoint,
            scopes=scopes,
            concurrency=concurrency,
            page_size=page_size,
            max_users=max_users,
            query_filter=query_filter,
            spot_check=spot_check,
            tls_no_verify=tls_no_verify,
            **resume_kwargs,
        )
        settings = ProfileStoreSettings.from_env()
    except ConfigError as exc:
        _print_error(exc.message, exc.details)
        sys.exit(1)

    store = JobArtifactStore()
    validator = ReconValidator(config, settings, store)
    report = RunReport()
    mode = SPOT_CHECK_RUN if spot_check is not None else FULL_RUN
    started = now_ms()
    logger.info("Starting %s run %s against %s", mode, validator.job_id, config.tenant_url)

    def on_event(event: ValidationEvent):
        report.add(event)
        if event.type == ValidationEvent.CHECKPOINT and spot_check is None:
            state.save_checkpoint(Checkpoint.from_dict(event.data), config.tenant_url)
        if not json_output:
            print_progress_line(event)

    try:
        validator.run(on_event=on_event)
    except KeyboardInterrupt:
        _print_error("Interrupted", "rerun with --resume to continue from the last checkpoint")
        sys.exit(1)

    if report.succeeded:
        _record_run(state, validator, report, mode, started)
        if output:
            _write_csv(store, report.job_id, output)

    print_report(report, json_output=json_output, mode=mode, version=__version__)
    sys.exit(0 if report.clean else 1)


def _record_run(state: StateStore, validator: ReconValidator, report: RunReport,
                mode: str, started: int):
    summary = report.progress
    if mode == FULL_RUN:
        state.clear_checkpoint()
    else:
        state.record_spot_check(report.job_id, validator.config.spot_check.sample_size,
                                validator.sampled_ids, summary.get("matches", 0),
                                summary.get("mismatches", 0))
    state.record_run({
        "id": report.job_id,
        "type": mode,
        "timestamp": started,
        "duration": now_ms() - started,
        "totalProcessed": summary.get("totalProcessed", 0),
        "matches": summary.get("matches", 0),
        "mismatches": summary.get("mismatches", 0),
        "errors": summary.get("errors", 0),
        "jobId": report.job_id,
    })


def _write_csv(store: JobArtifactStore, job_id: str, path: str):
    try:
        artifact = store.get(job_id)
    except ArtifactNotFound as exc:
        _print_error(exc.message)
        return
    with open(path, "w", newline="") as f:
        f.write(artifact.content)
    click.echo(_colorize(f"Wrote {artifact.row_count} mismatch rows to {path}", "dim"), err=True)


# -- serve -------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8080, show_default=True)
def serve(host: str, port: int):
    """Serve the validation stream and CSV downloads over HTTP."""
    from .server import serve as run_server
    click.echo(f"recon-check {__version__} listening on http://{host}:{port}")
    run_server(host, port)


# -- checkpoint --------------------------------------------------------------

@main.group()
def checkpoint():
    """Inspect or discard the saved checkpoint."""


@checkpoint.command("show")
@click.pass_obj
def checkpoint_show(state: StateStore):
    """Show the saved checkpoint, if any."""
    saved = state.load_checkpoint()
    if saved is None:
        click.echo("No saved checkpoint.")
        return
    p = saved.progress
    click.echo(f"Saved:          {_fmt_ms(saved.timestamp)}")
    click.echo(f"Processed:      {p.total_processed} "
               f"({p.matches} matched, {p.mismatches} mismatched, {p.errors} errors)")
    click.echo(f"Last activity:  {saved.last_processed_date or '-'}")
    if saved.cursor:
        click.echo("Resumable:      yes (recon-check validate --resume)")
    else:
        click.echo(_colorize("Resumable:      no, the cursor has expired", "yellow"))


@checkpoint.command("clear")
@click.pass_obj
def checkpoint_clear(state: StateStore):
    """Discard the saved checkpoint."""
    state.clear_checkpoint()
    click.echo("Checkpoint cleared.")


# -- history -----------------------------------------------------------------

@main.command()
@click.option("--json", "json_output", is_flag=True, help="Print history as JSON")
@click.pass_obj
def history(state: StateStore, json_output: bool):
    """List recent validation runs."""
    runs = state.run_history()
    if json_output:
        click.echo(json.dumps({"runs": runs, "spotChecks": state.spot_check_history()}, indent=2))
        return
    if not runs:
        click.echo("No runs recorded.")
        return
    click.echo(_colorize(f"{'Started':<20} {'Type':<11} {'Processed':>9} {'Match':>7} "
                         f"{'Mismatch':>8} {'Errors':>6}  Job", "bold"))
    for run in runs:
        click.echo(f"{_fmt_ms(run.get('timestamp')):<20} {run.get('type', ''):<11} "
                   f"{run.get('totalProcessed', 0):>9} {run.get('matches', 0):>7} "
                   f"{run.get('mismatches', 0):>8} {run.get('errors', 0):>6}  {run.get('jobId', '')}")


if __name__ == "__main__":
    main()
