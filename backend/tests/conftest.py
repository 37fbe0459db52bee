"""
Pytest Configuration and Fixtures

Every fixture is backed by the in-memory repositories, so the whole engine
runs without MongoDB.
"""
import pytest
import pytest_asyncio

from flowrun.domain.models import Contact
from flowrun.engine.automation_runner import AutomationRunner
from flowrun.engine.step_advancement import StepAdvancementEngine
from flowrun.repositories.inmemory import (
    InMemoryAccessTokenRepository,
    InMemoryContactRepository,
    InMemoryFlowRepository,
    InMemoryFlowRunRepository,
    InMemoryNotificationRepository,
    InMemoryStepExecutionRepository,
)
from flowrun.services.magic_link_service import MagicLinkService
from flowrun.services.notification_service import NotificationService
from flowrun.services.run_service import FlowRunService


@pytest.fixture
def step_repo():
    return InMemoryStepExecutionRepository()


@pytest.fixture
def run_repo():
    return InMemoryFlowRunRepository()


@pytest.fixture
def flow_repo():
    return InMemoryFlowRepository()


@pytest.fixture
def notification_repo():
    return InMemoryNotificationRepository()


@pytest.fixture
def token_repo():
    return InMemoryAccessTokenRepository()


@pytest_asyncio.fixture
async def contact_repo():
    repo = InMemoryContactRepository()
    for contact_id, name in (("C1", "Ada"), ("C2", "Grace"), ("C3", "Linus")):
        await repo.save(Contact(
            contact_id=contact_id,
            email=f"{name.lower()}@example.com",
            name=name
        ))
    return repo


@pytest.fixture
def magic_links(token_repo):
    return MagicLinkService(token_repo, expiry_hours=24)


@pytest.fixture
def notification_service(notification_repo, contact_repo, magic_links):
    return NotificationService(notification_repo, contact_repo, magic_links)


@pytest.fixture
def automation_runner(step_repo):
    return AutomationRunner(step_repo)


@pytest.fixture
def engine(step_repo):
    return StepAdvancementEngine(step_repo)


@pytest.fixture
def service(flow_repo, run_repo, step_repo, notification_service, automation_runner):
    return FlowRunService(
        flow_repo=flow_repo,
        run_repo=run_repo,
        step_repo=step_repo,
        notification_service=notification_service,
        automation_runner=automation_runner
    )
