"""Shared pytest fixtures for tenantgen tests."""
import pytest

from tenantgen.tests.fakes import make_row


@pytest.fixture
def prod_row():
    return make_row("acme", labels={"env": "prod", "tier": "gold"}, params={"replicas": "3"})


@pytest.fixture
def staging_row():
    return make_row("globex", labels={"env": "staging"}, params={"replicas": "1"})


@pytest.fixture
def unlabeled_row():
    return make_row("initech")
