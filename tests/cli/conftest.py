import functools
import logging

import click.testing
import pytest

from crontrigger.cli import main


@pytest.fixture(autouse=True)
def _restore_logging():
    names = ['', 'asyncio', 'aiohttp.access']
    saved = {name: (logging.getLogger(name).level, logging.getLogger(name).propagate,
                    logging.getLogger(name).handlers[:]) for name in names}
    yield
    for name, (level, propagate, handlers) in saved.items():
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.propagate = propagate
        logger.handlers[:] = handlers


@pytest.fixture()
def runner():
    return click.testing.CliRunner()


@pytest.fixture()
def invoke(runner):
    return functools.partial(runner.invoke, main)


@pytest.fixture()
def real_run(mocker):
    return mocker.patch('crontrigger._core.reactor.running.run')


@pytest.fixture()
def configure(mocker):
    return mocker.patch('crontrigger._core.actions.loggers.configure')
