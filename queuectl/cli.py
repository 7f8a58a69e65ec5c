"""
CLI interface for queuectl using Click
Main entry point for all commands
"""
import click
import json
import logging
import multiprocessing
import sys
from tabulate import tabulate

from .config import Config
from .control import ControlChannel
from .exceptions import QueueError
from .log import configure_logging
from .models import JobState
from .queue import QueueManager
from .workers import start_worker

STATE_COLORS = {
    'pending': 'yellow',
    'processing': 'blue',
    'completed': 'green',
    'dead': 'red',
}


def _queue(ctx) -> QueueManager:
    return QueueManager(ctx.obj['home'])


def _fail(message):
    click.echo(click.style(f"Error: {message}", fg='red'), err=True)
    sys.exit(1)


def _truncate(text, width):
    text = text or ""
    return text if len(text) <= width else text[:width - 3] + "..."


@click.group()
@click.option('--home', envvar='QUEUECTL_HOME', type=click.Path(file_okay=False),
              help='Queue home directory (default: ~/.queuectl)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, home, verbose):
    """
    queuectl - A CLI-based background job queue system

    Manage background jobs with workers, retries, and Dead Letter Queue.
    """
    ctx.ensure_object(dict)
    ctx.obj['home'] = home
    ctx.obj['log_level'] = logging.DEBUG if verbose else logging.INFO
    configure_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument('command', nargs=-1, required=True)
@click.option('--max-retries', type=click.IntRange(min=0), default=None,
              help='Override max retries for this job')
@click.pass_context
def enqueue(ctx, command, max_retries):
    """
    Enqueue a new job.

    COMMAND: Shell command to execute

    Example:
        queuectl enqueue echo hello
        queuectl enqueue --max-retries 5 -- "sleep 2 && exit 1"
    """
    try:
        job = _queue(ctx).enqueue(" ".join(command), max_retries)
    except (QueueError, ValueError) as e:
        _fail(e)
    click.echo(job.id)


@cli.group()
def worker():
    """Manage worker processes"""
    pass


@worker.command()
@click.option('--count', '-c', default=1, type=click.IntRange(min=1), help='Number of workers to start')
@click.pass_context
def start(ctx, count):
    """
    Start one or more worker processes.

    Example:
        queuectl worker start --count 3
    """
    home = ctx.obj['home']
    queue = QueueManager(home)
    ControlChannel(queue.paths.control_dir).clear()

    click.echo(f"Starting {count} worker(s)...")

    processes = []
    for i in range(count):
        worker_id = f"worker-{i+1}"
        p = multiprocessing.Process(
            target=start_worker,
            args=(worker_id, str(queue.paths.root), ctx.obj['log_level']),
            name=worker_id,
        )
        p.start()
        processes.append(p)
        click.echo(f"Started {worker_id} (PID: {p.pid})")

    click.echo(click.style(f"\n[OK] {count} worker(s) started", fg='green'))
    click.echo("Run 'queuectl worker stop' or press Ctrl+C to stop them.\n")

    try:
        for p in processes:
            p.join()
    except KeyboardInterrupt:
        click.echo("\nStopping workers after their current job...")
        ControlChannel(queue.paths.control_dir).request_stop()
        for p in processes:
            p.join()

    for p in processes:
        color = 'green' if p.exitcode == 0 else 'red'
        click.echo(click.style(f"{p.name} exited with code {p.exitcode}", fg=color))


@worker.command()
@click.pass_context
def stop(ctx):
    """
    Stop running workers gracefully.

    Workers finish their current job before exiting.
    """
    queue = QueueManager(ctx.obj['home'])
    ControlChannel(queue.paths.control_dir).request_stop()
    click.echo(click.style("Stop signal written. Workers exit after their current job.", fg='yellow'))


@cli.command()
@click.pass_context
def status(ctx):
    """
    Show queue status summary.

    Displays job counts by state and busy workers.
    """
    try:
        status_info = _queue(ctx).get_status()
    except QueueError as e:
        _fail(e)

    click.echo(click.style("\n=== Queue Status ===", fg='cyan', bold=True))
    click.echo(f"\nTotal Jobs: {status_info['total_jobs']}")
    workers = status_info['active_workers']
    click.echo(f"Busy Workers: {len(workers)}" + (f" ({', '.join(workers)})" if workers else ""))
    click.echo(f"DLQ Entries: {status_info['dlq_size']}")

    click.echo("\nJobs by State:")
    for state, count in status_info['jobs'].items():
        color = STATE_COLORS.get(state, 'white')
        click.echo(f"  {state.capitalize()}: {click.style(str(count), fg=color)}")

    click.echo()


@cli.command(name='list')
@click.option('--state', '-s', type=click.Choice([s.value for s in JobState]),
              help='Filter by state')
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']),
              default='table', help='Output format')
@click.pass_context
def list_jobs(ctx, state, output_format):
    """
    List jobs, optionally filtered by state.

    Example:
        queuectl list --state pending
        queuectl list --format json
    """
    try:
        jobs = _queue(ctx).list_jobs(state)
    except (QueueError, ValueError) as e:
        _fail(e)

    if output_format == 'json':
        click.echo(json.dumps([job.to_dict() for job in jobs], indent=2))
        return

    if not jobs:
        msg = "No jobs found" + (f" with state '{state}'" if state else "")
        click.echo(click.style(msg, fg='yellow'))
        return

    headers = ['ID', 'Command', 'State', 'Attempts', 'Next Run', 'Worker']
    rows = [
        [
            job.id,
            _truncate(job.command, 40),
            job.state,
            f"{job.attempts}/{job.max_retries}",
            (job.next_run_at or "")[:19],
            job.locked_by or "",
        ]
        for job in jobs
    ]

    click.echo(f"\n{len(jobs)} job(s) found:\n")
    click.echo(tabulate(rows, headers=headers, tablefmt='grid'))
    click.echo()


@cli.group()
def dlq():
    """Manage Dead Letter Queue"""
    pass


@dlq.command(name='list')
@click.option('--json', 'as_json', is_flag=True, help='Output JSON only')
@click.pass_context
def dlq_list(ctx, as_json):
    """
    List all jobs in the Dead Letter Queue.

    Example:
        queuectl dlq list
    """
    try:
        entries = _queue(ctx).list_dlq()
    except QueueError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return

    if not entries:
        click.echo(click.style("No jobs in Dead Letter Queue", fg='green'))
        return

    headers = ['ID', 'Command', 'Error', 'Moved At']
    rows = [
        [entry.id, _truncate(entry.command, 30), _truncate(entry.last_error or "N/A", 40), entry.moved_at[:19]]
        for entry in entries
    ]

    click.echo(f"\n{len(entries)} job(s) in DLQ:\n")
    click.echo(tabulate(rows, headers=headers, tablefmt='grid'))
    click.echo()


@dlq.command(name='retry')
@click.argument('job_id')
@click.pass_context
def dlq_retry(ctx, job_id):
    """
    Retry a job from the Dead Letter Queue.

    JOB_ID: ID of the job to retry

    Example:
        queuectl dlq retry job-1a2b3c4d5e6f
    """
    try:
        job = _queue(ctx).retry_dlq_job(job_id)
    except QueueError as e:
        _fail(e)
    click.echo(click.style(f"Job {job.id} moved back to pending queue", fg='green'))


@cli.command()
@click.argument('job_id')
@click.pass_context
def logs(ctx, job_id):
    """
    Show the output captured from a job's most recent attempt.

    JOB_ID: ID of the job
    """
    try:
        content = _queue(ctx).read_log(job_id)
    except QueueError as e:
        _fail(e)
    click.echo(content, nl=False)


@cli.group()
def config():
    """Manage configuration settings"""
    pass


@config.command(name='set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    """
    Set a configuration value.

    Available keys: max_retries, backoff_base, poll_interval_ms,
    job_timeout_ms, lease_timeout_ms

    Example:
        queuectl config set max_retries 5
        queuectl config set backoff_base 3
    """
    cfg = _queue(ctx).config
    try:
        stored = cfg.set(key, value)
    except QueueError as e:
        _fail(e)
    click.echo(click.style(f"[OK] Config updated: {key} = {stored!r}", fg='green'))


@config.command(name='get')
@click.argument('key', required=False)
@click.pass_context
def config_get(ctx, key):
    """
    Get configuration value(s).

    Example:
        queuectl config get max_retries
        queuectl config get
    """
    cfg = _queue(ctx).config

    if key:
        if key not in Config.DEFAULT_CONFIG:
            _fail(f"Unknown config key '{key}'")
        click.echo(f"{key}: {cfg.get(key)}")
        return

    click.echo(click.style("\n=== Configuration ===", fg='cyan', bold=True))
    click.echo(tabulate(sorted(cfg.get_all().items()), headers=['Key', 'Value']))
    click.echo()


def main():
    """Main entry point"""
    cli(obj={})


if __name__ == '__main__':
    main()
