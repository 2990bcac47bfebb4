"""
Process entry point.

GARM runs the provider once per request. The command and identifiers come
from the environment, the bootstrap document (CreateInstance only) comes on
stdin, and the result is written as JSON to stdout::

    GARM_COMMAND=GetInstance \\
    GARM_CONTROLLER_ID=... \\
    GARM_INSTANCE_ID=runner-1 \\
    GARM_PROVIDER_CONFIG_FILE=/etc/garm/incus.toml \\
    garm-provider-incus

Exit codes: 0 on success, 30 when the instance does not exist, 1 otherwise.
"""

import json
import logging
import signal
import sys
import threading

import typer

from garm_provider_incus import __version__
from garm_provider_incus.client import client_from_config
from garm_provider_incus.config import load_config
from garm_provider_incus.errors import NotFoundError, ProviderError, ValidationError
from garm_provider_incus.models import BootstrapInstance
from garm_provider_incus.provider import IncusProvider

log = logging.getLogger(__name__)

EXIT_NOT_FOUND = 30
EXIT_FAILURE = 1

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


class Command:
    CREATE_INSTANCE = "CreateInstance"
    DELETE_INSTANCE = "DeleteInstance"
    GET_INSTANCE = "GetInstance"
    LIST_INSTANCES = "ListInstances"
    START_INSTANCE = "StartInstance"
    STOP_INSTANCE = "StopInstance"
    REMOVE_ALL_INSTANCES = "RemoveAllInstances"
    GET_VERSION = "GetVersion"


# commands that act on GARM_INSTANCE_ID
INSTANCE_COMMANDS = (
    Command.DELETE_INSTANCE,
    Command.GET_INSTANCE,
    Command.START_INSTANCE,
    Command.STOP_INSTANCE,
)


def setup_logging(debug=False):
    """Send log records to stderr; stdout only carries command results."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    return handler


def build_provider(config_file, controller_id):
    """Load the config file and connect to the endpoint it names."""
    cfg = load_config(config_file)
    return IncusProvider(cfg, controller_id, client_from_config(cfg))


def read_bootstrap(stream):
    try:
        data = json.load(stream)
    except ValueError as e:
        raise ValidationError(f"failed to decode bootstrap params: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("bootstrap params must be a JSON object")
    return BootstrapInstance.from_dict(data)


def run_command(provider, command, instance_id="", pool_id="", stdin=None, cancel=None):
    """
    Execute one GARM command against ``provider``.

    :return: Text for stdout; empty for commands without a result
    """
    if command in INSTANCE_COMMANDS and not instance_id:
        raise ValidationError(f"missing GARM_INSTANCE_ID for {command}")

    if command == Command.CREATE_INSTANCE:
        bootstrap = read_bootstrap(stdin if stdin is not None else sys.stdin)
        instance = provider.create_instance(bootstrap, cancel=cancel)
        return json.dumps(instance.to_dict())

    if command == Command.GET_INSTANCE:
        return json.dumps(provider.get_instance(instance_id, cancel=cancel).to_dict())

    if command == Command.LIST_INSTANCES:
        instances = provider.list_instances(pool_id=pool_id or None, cancel=cancel)
        return json.dumps([i.to_dict() for i in instances])

    if command == Command.DELETE_INSTANCE:
        provider.delete_instance(instance_id, cancel=cancel)
        return ""

    if command == Command.START_INSTANCE:
        provider.start(instance_id, cancel=cancel)
        return ""

    if command == Command.STOP_INSTANCE:
        provider.stop(instance_id, force=False, cancel=cancel)
        return ""

    if command == Command.REMOVE_ALL_INSTANCES:
        provider.remove_all_instances(cancel=cancel)
        return ""

    raise ValidationError(f"invalid command: {command!r}")


def _install_signal_handlers(cancel):
    """Set ``cancel`` on SIGINT/SIGTERM; returns the previous handlers."""

    def handler(signum, frame):
        log.warning("Received signal %s, cancelling", signum)
        cancel.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


app = typer.Typer(
    add_completion=False,
    help="GARM external provider for Incus and LXD.",
)


@app.command()
def execute(
    command: str = typer.Option("", "--command", envvar="GARM_COMMAND", help="GARM command to run."),
    controller_id: str = typer.Option("", "--controller-id", envvar="GARM_CONTROLLER_ID"),
    pool_id: str = typer.Option("", "--pool-id", envvar="GARM_POOL_ID"),
    config_file: str = typer.Option("", "--config", envvar="GARM_PROVIDER_CONFIG_FILE"),
    instance_id: str = typer.Option("", "--instance-id", envvar="GARM_INSTANCE_ID"),
    debug: bool = typer.Option(False, "--debug", envvar="GARM_PROVIDER_DEBUG", help="Enable debug logging."),
    version: bool = typer.Option(False, "--version", help="Print the provider version and exit."),
):
    """Run the command named by GARM_COMMAND."""
    if version or command == Command.GET_VERSION:
        typer.echo(__version__)
        raise typer.Exit(code=0)

    log_handler = setup_logging(debug)

    cancel = threading.Event()
    previous_handlers = _install_signal_handlers(cancel)

    try:
        if not command:
            raise ValidationError("missing GARM_COMMAND")
        if not controller_id:
            raise ValidationError("missing GARM_CONTROLLER_ID")
        if not config_file:
            raise ValidationError("missing GARM_PROVIDER_CONFIG_FILE")

        provider = build_provider(config_file, controller_id)
        result = run_command(
            provider,
            command,
            instance_id=instance_id,
            pool_id=pool_id,
            stdin=sys.stdin,
            cancel=cancel,
        )
    except NotFoundError as e:
        typer.echo(f"failed to run command: {e}", err=True)
        raise typer.Exit(code=EXIT_NOT_FOUND)
    except ProviderError as e:
        typer.echo(f"failed to run command: {e}", err=True)
        raise typer.Exit(code=EXIT_FAILURE)
    finally:
        for sig, handler in previous_handlers.items():
            if handler is not None:
                signal.signal(sig, handler)
        logging.getLogger().removeHandler(log_handler)

    if result:
        typer.echo(result)


def main():
    app()
