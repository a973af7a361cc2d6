import pytest

from lucidcoder.branch_workflow import BranchWorkflow
from lucidcoder.config_loader import LucidCoderConfig
from lucidcoder.event_bus import EventBus
from lucidcoder.goals import GoalStore
from lucidcoder.workspace import Workspace


@pytest.fixture
def config() -> LucidCoderConfig:
    return LucidCoderConfig(testing={"mode": "simulate"})


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def goals(bus) -> GoalStore:
    return GoalStore(bus=bus)


@pytest.fixture
def workflow(tmp_path, config, bus, goals):
    wf = BranchWorkflow(
        tmp_path,
        config=config,
        workspace=Workspace(tmp_path, enabled=False),
        bus=bus,
        goals=goals,
        project_id="demo",
    )
    yield wf
    wf.jobs.shutdown()
