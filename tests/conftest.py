"""Pytest configuration and fixtures for pipeline tests."""

import json
from decimal import Decimal

import pytest

from srs_testgen import config as config_module
from srs_testgen.config import PipelineConfig
from srs_testgen.ledger import ModelPricing, UsageLedger
from srs_testgen.models import GenerationRequest, TokenUsage
from srs_testgen.runtime import MockProvider
from srs_testgen.stores import (
    InMemoryJobRepository,
    InMemoryRequirementStore,
    InMemoryUsageStore,
    QueueNotificationSink,
    StaticContextProvider,
)
from srs_testgen.workflow import JobOrchestrator


SAMPLE_SRS = """SOFTWARE REQUIREMENTS SPECIFICATION
1. Introduction
This document describes the login module.
2. Functional Requirements
2.1 Authentication
The system shall allow login. REQ-001: support SSO.
FR-12: Lock the account after five failed attempts.
Appendix A
Glossary of terms.
"""


def make_test_case(title, steps=None, **extra):
    case = {
        "title": title,
        "description": f"Verify {title.lower()}",
        "priority": "High",
        "type": "Positive",
        "preconditions": "User account exists",
        "testData": "username=alice",
        "steps": steps if steps is not None else [
            {"stepNumber": 1, "action": "Open the login page", "expectedResult": "Login form is shown"},
            {"stepNumber": 2, "action": "Submit credentials", "expectedResult": "Dashboard is shown"},
        ],
        "expectedResult": "User is signed in",
        "riskLevel": "Medium",
        "estimatedDuration": 10,
    }
    case.update(extra)
    return case


@pytest.fixture
def sample_srs():
    return SAMPLE_SRS


@pytest.fixture
def case_factory():
    """Build one raw test case dict as a model would emit it."""
    return make_test_case


@pytest.fixture
def six_valid_one_stepless_response():
    """Provider output with 6 well-formed test cases and 1 without steps."""
    cases = [make_test_case(f"Login scenario number {i}") for i in range(1, 7)]
    cases.append(make_test_case("Login without any steps", steps=[]))
    return "Here are the test cases:\n" + json.dumps({"testCases": cases}, indent=2) + "\nHope this helps!"


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        model="test-model",
        workers=2,
        queue_size=10,
        provider_timeout=1.0,
        job_timeout=5.0,
        monthly_cost_limit=Decimal("50.00"),
        monthly_request_limit=100,
    )


@pytest.fixture
def pricing():
    # $1 per million input tokens, $2 per million output tokens
    return {"test-model": ModelPricing(Decimal("1.00"), Decimal("2.00"))}


@pytest.fixture
def usage_store():
    return InMemoryUsageStore()


@pytest.fixture
def ledger(usage_store, pricing, pipeline_config):
    return UsageLedger(
        usage_store,
        monthly_cost_limit=pipeline_config.monthly_cost_limit,
        monthly_request_limit=pipeline_config.monthly_request_limit,
        pricing=pricing,
    )


@pytest.fixture
def requirement_store():
    return InMemoryRequirementStore()


@pytest.fixture
def requirement(requirement_store):
    return requirement_store.add(SAMPLE_SRS.encode("utf-8"), "text/plain", file_ref="srs.txt")


@pytest.fixture
def context_provider():
    return StaticContextProvider(
        projects={"proj-1": {"name": "Checkout", "description": "Web checkout flow"}},
        titles={"proj-1": ["Existing login test"]},
    )


@pytest.fixture
def job_repository():
    return InMemoryJobRepository()


@pytest.fixture
def notifier():
    return QueueNotificationSink()


@pytest.fixture
def make_request(requirement):
    def factory(**overrides):
        fields = {
            "project_id": "proj-1",
            "requirement_id": requirement.id,
            "test_suite_id": "suite-1",
            "requester_id": "alice",
        }
        fields.update(overrides)
        return GenerationRequest(**fields)
    return factory


@pytest.fixture
def make_orchestrator(ledger, requirement_store, context_provider, job_repository, notifier, pipeline_config):
    def factory(provider, config=None):
        return JobOrchestrator(
            provider,
            ledger,
            requirement_store,
            context_provider,
            job_repository,
            notifier,
            config=config or pipeline_config,
        )
    return factory


@pytest.fixture
def mock_provider(six_valid_one_stepless_response):
    return MockProvider(
        [six_valid_one_stepless_response],
        usage=TokenUsage(prompt_tokens=1000, completion_tokens=500),
    )


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Point config files at a temp dir and clear related environment variables."""
    user = tmp_path / "user" / "config.toml"
    project = tmp_path / "srs-testgen.toml"
    monkeypatch.setattr(config_module, "USER_CFG", user)
    monkeypatch.setattr(config_module, "PROJECT_CFG", project)
    for key in config_module.DEFAULTS:
        monkeypatch.delenv(config_module.ENV_PREFIX + key.upper(), raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return user, project
