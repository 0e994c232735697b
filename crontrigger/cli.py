import asyncio
import dataclasses
import functools
from typing import Any, Callable

import click

from crontrigger._cogs.clients import auth
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.structs import credentials, references
from crontrigger._core.actions import loggers
from crontrigger._core.intents import piggybacking
from crontrigger._core.reactor import errors, running, versioning


@dataclasses.dataclass()
class CLIControls:
    """ The controls, which are impossible to pass via CLI (used in tests and embedding). """
    ready_flag: asyncio.Event | None = None
    stop_flag: asyncio.Event | None = None
    connection: auth.Connection | None = None
    settings: configuration.ControllerSettings | None = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: bool | None = False,
                log_refkey: str | None = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


@click.version_option(prog_name='crontrigger')
@click.group(name='crontrigger', context_settings=dict(
    auto_envvar_prefix='CRONTRIGGER',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-A', '--all-namespaces', 'clusterwide', is_flag=True)
@click.option('-n', '--namespace', type=str)
@click.option('-L', '--liveness', 'liveness_endpoint', type=str)
@click.option('--context', 'context_name', type=str)
@click.option('--workers', type=click.IntRange(min=1))
@click.option('--max-retries', type=click.IntRange(min=0))
@click.option('--resync-period', type=click.FloatRange(min=0))
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        namespace: str | None,
        clusterwide: bool,
        liveness_endpoint: str | None,
        context_name: str | None,
        workers: int | None,
        max_retries: int | None,
        resync_period: float | None,
) -> None:
    """ Start the controller process and reconcile the cron-triggers. """
    if namespace and clusterwide:
        raise click.UsageError("Either --namespace or --all-namespaces can be used, not both.")
    settings = __controls.settings if __controls.settings is not None else configuration.ControllerSettings()
    if workers is not None:
        settings.queueing.workers = workers
    if max_retries is not None:
        settings.queueing.max_retries = max_retries
    if resync_period is not None:
        settings.watching.resync_period = resync_period or None
    return running.run(
        namespace=references.NamespaceName(namespace) if namespace else None,
        clusterwide=clusterwide,
        liveness_endpoint=liveness_endpoint,
        context_name=context_name,
        settings=settings,
        connection=__controls.connection,
        stop_flag=__controls.stop_flag,
        ready_flag=__controls.ready_flag,
    )


@main.command(name='version-of')
@logging_options
@click.option('--context', 'context_name', type=str)
@click.option('-g', '--group', 'groups', multiple=True)
@click.argument('plural')
@click.make_pass_decorator(CLIControls, ensure=True)
def version_of(
        __controls: CLIControls,
        plural: str,
        groups: tuple[str, ...],
        context_name: str | None,
) -> None:
    """ Print the API group/version currently served for a resource plural. """
    settings = __controls.settings if __controls.settings is not None else configuration.ControllerSettings()
    try:
        resource = asyncio.run(_resolve(
            plural,
            groups=groups or None,
            settings=settings,
            context_name=context_name,
            connection=__controls.connection,
        ))
    except errors.ResourceNotServedError as e:
        raise click.ClickException(str(e)) from e
    except credentials.LoginError as e:
        raise click.ClickException(f"Cannot login to the cluster: {e}") from e
    click.echo(resource.api_version)


async def _resolve(
        plural: str,
        *,
        groups: tuple[str, ...] | None,
        settings: configuration.ControllerSettings,
        context_name: str | None,
        connection: auth.Connection | None,
) -> references.Resource:
    connection = connection if connection is not None else auth.Connection()
    if connection.info is None:
        connection.info = piggybacking.login(context_name=context_name)
    auth.connection_var.set(connection)
    try:
        resolver = versioning.Resolver(settings=settings)
        return await resolver.resolve(plural, groups=groups)
    finally:
        await connection.close()
