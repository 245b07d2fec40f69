"""Test Pydantic models."""

import pytest
from pydantic import ValidationError

from srs_testgen.models import (
    GeneratedTestCase,
    GenerationJob,
    GenerationRequest,
    JobStatus,
    ReviewStatus,
    TestStep as Step,
    TokenUsage,
    UsageRecord,
)


def make_steps(*numbers):
    return [Step(step_number=n, action=f"Do {n}", expected_result=f"Result {n}") for n in numbers]


class TestJobStatus:
    """Job lifecycle transitions."""

    @pytest.mark.parametrize("current,target", [
        (JobStatus.QUEUED, JobStatus.PROCESSING),
        (JobStatus.QUEUED, JobStatus.CANCELLED),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.CANCELLED),
    ])
    def test_forward_transitions(self, current, target):
        assert current.can_transition_to(target)

    @pytest.mark.parametrize("current,target", [
        (JobStatus.PROCESSING, JobStatus.QUEUED),
        (JobStatus.QUEUED, JobStatus.COMPLETED),
        (JobStatus.COMPLETED, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.PROCESSING),
        (JobStatus.CANCELLED, JobStatus.QUEUED),
    ])
    def test_backward_or_skipping_transitions(self, current, target):
        assert not current.can_transition_to(target)

    def test_terminal_states(self):
        assert {s for s in JobStatus if s.is_terminal} == {
            JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED
        }


class TestGeneratedTestCase:
    """Test GeneratedTestCase model."""

    def test_valid_test_case(self):
        case = GeneratedTestCase(title="Login works", steps=make_steps(1, 2))

        assert case.priority == "Medium"
        assert case.type == "Positive"
        assert case.estimated_duration == 15
        assert case.review_status == ReviewStatus.PENDING

    def test_requires_steps(self):
        with pytest.raises(ValidationError):
            GeneratedTestCase(title="Login works", steps=[])

    def test_steps_must_be_sequential(self):
        with pytest.raises(ValidationError):
            GeneratedTestCase(title="Login works", steps=make_steps(1, 3))

    @pytest.mark.parametrize("title", ["abcd", "x" * 256])
    def test_title_length(self, title):
        with pytest.raises(ValidationError):
            GeneratedTestCase(title=title, steps=make_steps(1))

    @pytest.mark.parametrize("duration", [0, 481])
    def test_duration_range(self, duration):
        with pytest.raises(ValidationError):
            GeneratedTestCase(title="Login works", steps=make_steps(1), estimated_duration=duration)

    def test_priority_vocabulary(self):
        with pytest.raises(ValidationError):
            GeneratedTestCase(title="Login works", steps=make_steps(1), priority="Urgent")


class TestGenerationRequest:
    def test_defaults(self):
        request = GenerationRequest(project_id="p", requirement_id="r", test_suite_id="s", requester_id="u")

        assert request.max_test_cases == 10
        assert request.include_negative_tests is True
        assert request.testing_approach == "functional"

    @pytest.mark.parametrize("count", [0, 51])
    def test_max_test_cases_range(self, count):
        with pytest.raises(ValidationError):
            GenerationRequest(project_id="p", requirement_id="r", test_suite_id="s",
                              requester_id="u", max_test_cases=count)


class TestGenerationJob:
    def test_failed_job_needs_message(self):
        with pytest.raises(ValidationError):
            GenerationJob(status=JobStatus.FAILED, requirement_id="r", project_id="p",
                          test_suite_id="s", requester_id="u", model="m")

    def test_ids_are_unique(self):
        fields = dict(requirement_id="r", project_id="p", test_suite_id="s", requester_id="u", model="m")

        assert GenerationJob(**fields).id != GenerationJob(**fields).id


class TestUsage:
    def test_total_tokens(self):
        assert TokenUsage(prompt_tokens=1000, completion_tokens=500).total_tokens == 1500

    def test_usage_record_is_immutable(self):
        record = UsageRecord(requester_id="u", model="m", prompt_tokens=1, completion_tokens=1, cost="0.01")

        with pytest.raises(ValidationError):
            record.cost = 0
