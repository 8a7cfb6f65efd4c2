# cli.py
from __future__ import annotations

import logging
import sys
from dataclasses import replace

import click

from jobfleet.agent.api_client import APIError, CoordinatorClient
from jobfleet.errors import CoordinatorError
from jobfleet.model import AutomatonPayload, ShellPayload
from jobfleet.settings import DEFAULT_COORDINATOR_URL, CoordinatorSettings, HostSettings
from jobfleet.ui.console import Console, get_console, set_console


def _overrides(**kwargs) -> dict:
    return {k: v for k, v in kwargs.items() if v is not None}


def _client_error(ctx, e: APIError, base_url: str) -> None:
    console = get_console()
    if e.status == 503:
        console.print_error(
            "Replication quorum not met",
            str(e),
            suggestion="The coordinator applied the change locally; retry once peers are reachable.",
        )
    elif e.status is None:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e)],
            suggestion="Verify the coordinator URL is correct and the coordinator is running.",
        )
    else:
        console.print_error("API request failed", str(e))
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and debug logs)",
)
@click.pass_context
def cli(ctx, debug):
    """jobfleet: lease-based job dispatch from replicated coordinators to a host fleet."""
    set_console(Console(debug=debug))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--host", default=None, help="Bind address [JOBFLEET_COORDINATOR_HOST]")
@click.option("--port", default=None, type=int, help="Bind port [JOBFLEET_COORDINATOR_PORT]")
@click.option("--token", default=None, help="Shared auth token [JOBFLEET_TOKEN]")
@click.option("--lease-ms", default=None, type=int, help="Lease duration in ms [JOBFLEET_LEASE_MS]")
@click.option("--store-url", default=None, help="sqlite:///path, any SQLAlchemy URL, or redis://... [JOBFLEET_STORE_URL]")
@click.option("--node-id", default=None, help="Node identifier [JOBFLEET_NODE_ID]")
@click.option("--peer", "peers", multiple=True, help="Peer coordinator URL, repeatable [JOBFLEET_PEERS]")
@click.option("--min-replicas", default=None, type=int, help="Replicas required per write, self included [JOBFLEET_MIN_REPLICAS]")
@click.pass_context
def coordinator(ctx, host, port, token, lease_ms, store_url, node_id, peers, min_replicas):
    """Run a coordinator node."""
    import uvicorn
    from jobfleet.coordinator.app import create_app
    from jobfleet.coordinator.peers import normalize_peer_urls

    console = get_console()
    settings = replace(
        CoordinatorSettings.from_env(),
        **_overrides(
            host=host,
            port=port,
            token=token,
            lease_ms=lease_ms,
            store_url=store_url,
            node_id=node_id,
            peer_urls=list(peers) or None,
            min_replicas=min_replicas,
        ),
    )

    try:
        app = create_app(settings)
    except CoordinatorError as e:
        console.print_error(
            "Invalid coordinator configuration",
            e.message,
            suggestion="Add peers with --peer or lower --min-replicas (1 runs a single node).",
        )
        sys.exit(1)

    console.print_coordinator_started(
        node_id=app.state.coordinator.node_id,
        host=settings.host,
        port=settings.port,
        peers=normalize_peer_urls(settings.peer_urls, settings.port),
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="debug" if ctx.obj["debug"] else "info")


@cli.command()
@click.option("--coordinator", "coordinator_url", default=None, help="Coordinator URL [JOBFLEET_COORDINATOR_URL]")
@click.option("--token", default=None, help="Shared auth token [JOBFLEET_TOKEN]")
@click.option("--name", default=None, help="Host name [JOBFLEET_HOST_NAME]")
@click.option("--host-id", default=None, help="Stable host id for reconnects [JOBFLEET_HOST_ID]")
@click.option("--capability", "capabilities", multiple=True, help="Capability tag, repeatable [JOBFLEET_CAPABILITIES]")
@click.option("--max-parallel", default=None, type=int, help="Concurrent jobs [JOBFLEET_MAX_PARALLEL]")
@click.pass_context
def host(ctx, coordinator_url, token, name, host_id, capabilities, max_parallel):
    """Run a host agent that claims and executes jobs."""
    from jobfleet.agent.agent import run_agent

    console = get_console()
    settings = replace(
        HostSettings.from_env(),
        **_overrides(
            coordinator_url=coordinator_url,
            token=token,
            host_name=name,
            host_id=host_id,
            capabilities=list(capabilities) or None,
            max_parallel=max_parallel,
        ),
    )

    try:
        run_agent(settings)
    except KeyboardInterrupt:
        console.print_info("\nAgent stopped by user")
        sys.exit(0)
    except APIError as e:
        _client_error(ctx, e, settings.coordinator_url)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def _client(coordinator_url, token) -> CoordinatorClient:
    settings = HostSettings.from_env()
    return CoordinatorClient(coordinator_url or settings.coordinator_url, token or settings.token)


@cli.command("enqueue-shell", context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--coordinator", "coordinator_url", default=None, help="Coordinator URL [JOBFLEET_COORDINATOR_URL]")
@click.option("--token", default=None, help="Shared auth token [JOBFLEET_TOKEN]")
@click.option("--require", "requires", multiple=True, default=("shell",), show_default=True, help="Required capability, repeatable")
@click.option("--cwd", default=None, help="Working directory on the host")
@click.option("--timeout-ms", default=None, type=int, help="Per-job timeout")
@click.pass_context
def enqueue_shell(ctx, command, args, coordinator_url, token, requires, cwd, timeout_ms):
    """Queue a shell command. Prints the job id."""
    client = _client(coordinator_url, token)
    payload = ShellPayload(command=command, args=list(args), cwd=cwd, timeout_ms=timeout_ms)
    try:
        job = client.enqueue(payload, list(requires))
    except APIError as e:
        _client_error(ctx, e, client.base_url)
    click.echo(job.id)


@cli.command("enqueue-automaton", context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--coordinator", "coordinator_url", default=None, help="Coordinator URL [JOBFLEET_COORDINATOR_URL]")
@click.option("--token", default=None, help="Shared auth token [JOBFLEET_TOKEN]")
@click.option("--require", "requires", multiple=True, default=("automaton",), show_default=True, help="Required capability, repeatable")
@click.option("--dir", "working_dir", default=None, help="Automaton working directory on the host")
@click.option("--timeout-ms", default=None, type=int, help="Per-job timeout")
@click.pass_context
def enqueue_automaton(ctx, args, coordinator_url, token, requires, working_dir, timeout_ms):
    """Queue an automaton run. Prints the job id."""
    client = _client(coordinator_url, token)
    payload = AutomatonPayload(args=list(args), working_dir=working_dir, timeout_ms=timeout_ms)
    try:
        job = client.enqueue(payload, list(requires))
    except APIError as e:
        _client_error(ctx, e, client.base_url)
    click.echo(job.id)


@cli.command()
@click.option("--coordinator", "coordinator_url", default=None, help=f"Coordinator URL (default {DEFAULT_COORDINATOR_URL})")
@click.option("--token", default=None, help="Shared auth token [JOBFLEET_TOKEN]")
@click.pass_context
def state(ctx, coordinator_url, token):
    """Show hosts and jobs known to a coordinator."""
    client = _client(coordinator_url, token)
    try:
        snapshot = client.state()
    except APIError as e:
        _client_error(ctx, e, client.base_url)
    get_console().print_snapshot(snapshot)


if __name__ == "__main__":
    cli()
