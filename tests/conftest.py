"""Shared fixtures: in-memory storage, a recording broker and a deterministic content generator."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

# Ensure required settings are available before importing the app.
os.environ["QUESTLINE_ALLOWED_ORIGINS"] = "http://localhost"
os.environ["QUESTLINE_STORAGE_BACKEND"] = "memory"
os.environ["QUESTLINE_WORKER_SECRET"] = "test-worker-secret"
os.environ["QUESTLINE_BASE_URL"] = "http://localhost:8080"
os.environ["QUESTLINE_TASK_SERVICE_PROVIDER"] = "local-http"
os.environ["QUESTLINE_WORKER_ID"] = "worker-test"
os.environ.pop("QUESTLINE_LLM_API_KEY", None)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from questline.config import Settings, get_settings  # noqa: E402
from questline.core.exceptions import BrokerPublishError, ContentGenerationError  # noqa: E402
from questline.jobs.models import JobRecord  # noqa: E402
from questline.services.container import Services, build_services  # noqa: E402
from questline.storage.factory import Repositories, build_memory_repositories  # noqa: E402
from questline.storage.memory import InMemoryState  # noqa: E402
from questline.storage.progression_repo import AdventureQuestRecord  # noqa: E402
from questline.utils.timeutil import utcnow  # noqa: E402


@dataclass(frozen=True)
class PublishCall:
  job_id: str
  dedup_key: str
  delay_seconds: int


class RecordingEnqueuer:
  """Broker double that records publishes and can be told to fail."""

  def __init__(self) -> None:
    self.calls: list[PublishCall] = []
    self.fail = False

  async def publish(self, job_id: str, *, dedup_key: str, delay_seconds: int = 0) -> None:
    if self.fail:
      raise BrokerPublishError("broker down", job_id=job_id)
    self.calls.append(PublishCall(job_id=job_id, dedup_key=dedup_key, delay_seconds=delay_seconds))

  @property
  def dedup_keys(self) -> list[str]:
    return [call.dedup_key for call in self.calls]


class FakeContentGenerator:
  """Deterministic generator; every kind answers with a title and a markdown body."""

  model = "fake-model"

  def __init__(self) -> None:
    self.calls: list[tuple[str, dict[str, Any]]] = []
    self.fail = False

  async def generate_json(self, kind: str, context: dict[str, Any]) -> dict[str, Any]:
    self.calls.append((kind, context))
    if self.fail:
      raise ContentGenerationError(f"generator refused {kind}")
    return {"title": f"{kind} title", "markdown": f"# {kind}\n\nGenerated for tests."}


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings(), broker_timeout_seconds=2.0, job_default_timeout_seconds=5.0, job_timeouts={})


@pytest.fixture
def state() -> InMemoryState:
  return InMemoryState()


@pytest.fixture
def repositories(state: InMemoryState) -> Repositories:
  return build_memory_repositories(state)


@pytest.fixture
def enqueuer() -> RecordingEnqueuer:
  return RecordingEnqueuer()


@pytest.fixture
def generator() -> FakeContentGenerator:
  return FakeContentGenerator()


@pytest.fixture
def services(settings: Settings, repositories: Repositories, enqueuer: RecordingEnqueuer, generator: FakeContentGenerator) -> Services:
  return build_services(settings, repositories=repositories, enqueuer=enqueuer, generator=generator)


@pytest.fixture
def seed_adventure(state: InMemoryState):
  """Register a session owned by `user-1` and three quest templates on adventure `adv-1`."""
  state.add_session("sess-1", "user-1")
  for index, difficulty in enumerate((1, 2, 3), start=1):
    state.add_adventure_quest(AdventureQuestRecord(id=f"aq-{index}", adventure_id="adv-1", title=f"Quest {index}", description="Tidy up", difficulty=difficulty, estimate_min=10 * index, room_code="kitchen"))
  state.add_adventure_quest(AdventureQuestRecord(id="aq-other", adventure_id="adv-2", title="Elsewhere"))
  return state


@pytest.fixture
def make_job(state: InMemoryState):
  """Insert a job row directly, bypassing the enqueue path."""

  def _make(job_id: str = "job-1", *, owner_id: str = "user-1", job_type: str = "welcome_message", status: str = "queued", attempts: int = 0, max_attempts: int = 3, age_seconds: float = 0, **fields: Any) -> JobRecord:
    stamp = utcnow() - timedelta(seconds=age_seconds)
    record = JobRecord(
      id=job_id,
      owner_id=owner_id,
      job_type=job_type,  # type: ignore[arg-type]
      payload=fields.pop("payload", {}),
      status=status,  # type: ignore[arg-type]
      priority=50,
      attempts=attempts,
      max_attempts=max_attempts,
      created_at=stamp,
      updated_at=stamp,
      **fields,
    )
    state.jobs[job_id] = record
    return record

  return _make


@pytest.fixture
async def async_client(services: Services) -> AsyncIterator[AsyncClient]:
  from questline.main import app

  app.state.services = services
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.state.services = None
