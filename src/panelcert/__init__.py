from .audit import configure_audit
from .config import load_config
from .errors import ConfigError, PanelcertError
from .orchestrator import MANUAL, Orchestrator
from .servers import start_server
from .utils import Deadline, fatal
import click


def setup(config_path, serve=False, **overrides):
    try:
        config = load_config(config_path, **overrides).validate(serve=serve)
    except ConfigError as e:
        fatal(str(e), code=e.exit_code)
    if config.log_file is not None:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        configure_audit(
            config.log_file, max_bytes=config.log_max_bytes,
            backups=config.log_backups)
    return config


@click.group(context_settings=dict(help_option_names=['-h', '--help']))
def main():
    """Keeps the certificate of a cPanel hosted domain renewed."""


@main.command()
@click.option(
    "-c", "--config", "config_path", metavar="PATH",
    help="JSON config file, defaults to $CONFIG_FILE or ./config.json.")
@click.option(
    "-n/-N", "--dry-run/--no-dry-run", default=None,
    help="Don't install anything, see dry_run_mode in the config.")
@click.option(
    "-s/-p", "--staging/--production", default=None,
    help="Use staging server of letsencrypt.org for testing.")
@click.option(
    "-f", "--force", is_flag=True, default=False,
    help="Request a new certificate even if the current one is still valid.")
@click.option(
    "--timeout", type=float, default=None, metavar="SECONDS",
    help="Give up waiting on the CA after this many seconds.")
def renew(config_path, dry_run, staging, force, timeout):
    """Runs the renewal once.

    Exits with 0 when the certificate is valid and installed, 2 when it
    has to be installed manually, 3 on failure and 4 when another run for
    the domain is active."""
    config = setup(config_path, dry_run=dry_run, staging=staging)
    deadline = Deadline(timeout) if timeout else None
    try:
        outcome = Orchestrator(config).run(deadline=deadline, force=force)
    except PanelcertError as e:
        fatal(str(e), code=e.exit_code)
    if outcome.status == MANUAL:
        raise SystemExit(2)


@main.command()
@click.option(
    "-c", "--config", "config_path", metavar="PATH",
    help="JSON config file, defaults to $CONFIG_FILE or ./config.json.")
@click.option(
    "--host", default=None,
    help="Address to listen on, defaults to listen_host from the config.")
@click.option(
    "--port", type=int, default=None,
    help="Port to listen on, defaults to listen_port from the config.")
def serve(config_path, host, port):
    """Serves the renewal trigger endpoint.

    ``POST /certificate/renew`` with ``Authorization: Bearer <token>``
    starts a run, ``GET /health`` reports the last one."""
    config = setup(config_path, serve=True, listen_host=host, listen_port=port)
    server, thread = start_server(
        Orchestrator(config), host=config.listen_host, port=config.listen_port)
    try:
        thread.join()
    except KeyboardInterrupt:
        click.echo("Stopping http server.")
        server.shutdown()


if __name__ == '__main__':
    main()
