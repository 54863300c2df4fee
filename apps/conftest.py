import pytest

from apps.flows.config import reload_settings
from apps.flows.repository import InMemoryAgentRepository, InMemoryFlowRepository
from apps.flows.service import FlowService


@pytest.fixture(autouse=True)
def _reset_settings():
    """Settings are cached; tests that patch the environment get a fresh read."""
    reload_settings()
    yield
    reload_settings()


@pytest.fixture()
def flow_repository():
    return InMemoryFlowRepository()


@pytest.fixture()
def agent_repository():
    return InMemoryAgentRepository()


@pytest.fixture()
def service(flow_repository, agent_repository):
    return FlowService(flow_repository, agent_repository)
