"""Shared test fixtures for unit tests."""

import pytest

from decision_engine.core.config import EngineConfig, clear_config_cache
from decision_engine.storage.memory import InMemoryStore
from decision_engine.workflow.conditions import ConditionRegistry
from decision_engine.workflow.engine import WorkflowEngine

from tree_fixtures import PROJECT_ID, prep_tree


@pytest.fixture(autouse=True)
def _reset_global_state():
    yield
    ConditionRegistry.reset()
    clear_config_cache()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(store):
    config = EngineConfig(storage={"backend": "memory"})
    return WorkflowEngine(store, config)


@pytest.fixture
def prep_engine(engine):
    """Engine with the Prep tree published and active for PROJECT_ID."""
    operations, conditions = prep_tree()
    engine.publish_tree(PROJECT_ID, "Deck build", operations, conditions, tree_id="tree-1")
    return engine
