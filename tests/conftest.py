"""
Shared fixtures: a fresh in-memory provider and data context per test.
"""

import pytest

from liverepo import DataContext, DataLayerConfig, Environment, InMemoryDataProvider

from tests import models


@pytest.fixture
def provider():
    return InMemoryDataProvider()


@pytest.fixture
async def context(provider):
    context = DataContext(provider, DataLayerConfig.for_environment(Environment.TESTING))
    yield context
    await context.close()


@pytest.fixture(autouse=True)
def reset_hook_calls():
    models.hook_calls.clear()
    yield
    models.hook_calls.clear()
