from __future__ import annotations

from pathlib import Path

import pytest

from productflow_agent.config import Settings
from productflow_agent.service import WorkflowService

from .fakes import FakeModel


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database={"url": f"sqlite:///{tmp_path / 'productflow.db'}"},
        storage={"root": tmp_path / "uploads"},
    )


@pytest.fixture()
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture()
def service(settings: Settings, fake_model: FakeModel) -> WorkflowService:
    return WorkflowService.from_settings(settings, invoker=fake_model)


@pytest.fixture()
def project(service: WorkflowService):
    return service.create_project("Invoice helper", "I need a small tool for freelancers to manage invoices")
