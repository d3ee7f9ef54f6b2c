"""Shared fixtures for Strata tests."""

import logging
import os

import pytest

from strata.discovery import Unit
from strata.parser import clear_raw_cache
from strata.schema import ConfigDocument


@pytest.fixture(autouse=True)
def _fresh_raw_cache():
    clear_raw_cache()
    yield
    clear_raw_cache()


@pytest.fixture(autouse=True)
def _reset_strata_logger():
    logger = logging.getLogger("strata")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def write_config():
    """Write a configuration file, creating parent directories."""

    def _write(path, content=""):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    return _write


@pytest.fixture
def make_unit():
    """Build an in-memory Unit for graph and scheduler tests."""

    def _make(path, dependencies=(), blocks=None, attributes=None, external=False, skip=False):
        config = ConfigDocument(
            path=os.path.join(path, "terragrunt.hcl"),
            blocks=blocks or {},
            attributes=attributes or {},
        )
        return Unit(
            path=path,
            config=config,
            dependencies=set(dependencies),
            skip=skip,
            external=external,
        )

    return _make

