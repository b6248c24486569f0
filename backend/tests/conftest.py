from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from dotenv import load_dotenv

# Load the test environment FIRST, before any app imports, so the settings
# object is built with the in-memory store and no external services.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test", override=True)

from app.main import app  # noqa: E402
from app.config.settings import settings  # noqa: E402
from app.models.flow import FlowDefinition  # noqa: E402
from app.models.session import Conversation  # noqa: E402
from app.services.ai_service import render_template_reply  # noqa: E402
from app.services.flow_store import InMemoryFlowStore  # noqa: E402
from app.services.tool_service import ToolDependencies  # noqa: E402
from app.services.tools import registry_lookup  # noqa: E402
from app.utils.lifecycle import build_components  # noqa: E402


class FakeAI:
    """
    Scripted stand-in for the AI capabilities. Extraction answers are keyed by
    the exact user message; unknown messages extract nothing.
    """

    def __init__(self):
        self.extractions: Dict[str, Dict[str, Any]] = {}
        self.flow_guess: Optional[str] = None
        self.compose_requests: List[Any] = []
        self.compose_error: Optional[Exception] = None

    async def extract_fields(self, message, fields, context):
        return dict(self.extractions.get(message, {}))

    async def guess_flow(self, message, candidates):
        return self.flow_guess

    async def compose_reply(self, request):
        self.compose_requests.append(request)
        if self.compose_error is not None:
            raise self.compose_error
        return render_template_reply(request)


class FakeRegistryClient:
    """Replaces the HTTP registry client; records lookups."""

    def __init__(self, record: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.record = record
        self.error = error
        self.lookups: List[str] = []

    async def find_company(self, registration_id: str):
        self.lookups.append(registration_id)
        if self.error is not None:
            raise self.error
        return self.record


ACME_RECORD = {
    registry_lookup.COLUMN_ID: 510000003,
    registry_lookup.COLUMN_NAME: "Acme Ltd",
    registry_lookup.COLUMN_NAME_EN: "ACME LTD",
    registry_lookup.COLUMN_TYPE: "חברה פרטית",
    registry_lookup.COLUMN_STATUS: "פעילה",
}


def make_flow(slug: str, stages: Dict[str, Any], fields: Optional[Dict[str, Any]] = None, **config) -> FlowDefinition:
    """Build a flow from camelCase stage/field documents; config keys are camelCase too."""
    config.setdefault("initialStage", next(iter(stages)))
    return FlowDefinition.model_validate({
        "name": slug.replace("_", " ").title(),
        "slug": slug,
        "definition": {"stages": stages, "fields": fields or {}, "config": config},
    })


async def start_session(store, flow_slug: str, stage: str, data: Optional[Dict[str, Any]] = None) -> Conversation:
    """A conversation whose user already sits at ``flow_slug``/``stage``."""
    conversation = await store.create_conversation(Conversation())
    user_id = await store.create_user()
    await store.assign_user(conversation.id, user_id)
    conversation.user_id = user_id
    await store.save_user_flow(user_id, flow_slug, stage)
    if data:
        await store.set_user_data(user_id, flow_slug, data)
    return conversation


@pytest.fixture
def store():
    return InMemoryFlowStore()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def fake_registry():
    return FakeRegistryClient(record=None)


@pytest_asyncio.fixture
async def components(store, fake_ai, fake_registry):
    """Fully wired engine over the in-memory store with the built-in flows seeded."""
    dependencies = ToolDependencies(extra={"registry_client": fake_registry})
    return await build_components(store, ai=fake_ai, settings_obj=settings, tool_dependencies=dependencies)


@pytest.fixture
def test_client(fake_ai, fake_registry):
    """
    Provides a TestClient for API integration tests. The lifespan builds the
    real components; extraction and the registry lookup are swapped for fakes.
    """
    with TestClient(app) as client:
        components = client.app.state.components
        components.router.extractor = fake_ai
        components.router.classifier = fake_ai
        components.tools.register(
            "lookup.registry",
            registry_lookup.create_tool(ToolDependencies(extra={"registry_client": fake_registry})),
        )
        yield client
