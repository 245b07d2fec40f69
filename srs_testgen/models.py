"""
Data models for the test case generation pipeline.

These Pydantic models define requirements, generation requests, provider
exchanges, validated test cases, jobs and usage records. Money is kept as
Decimal so quota arithmetic stays exact at cent boundaries.
"""

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Dict, Optional, Literal, Any
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


MAX_TEST_CASES = 50

Priority = Literal["Low", "Medium", "High", "Critical"]
TestCaseType = Literal["Positive", "Negative", "Edge Case", "Boundary"]
RiskLevel = Literal["Low", "Medium", "High"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# ==================== Enums ====================

class JobStatus(str, Enum):
    """Generation job lifecycle states."""
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Statuses only move forward: Queued -> Processing -> terminal."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class ReviewStatus(str, Enum):
    """Human review state of a generated test case."""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    MODIFIED = "Modified"


# ==================== Requirement Models ====================

class RequirementSection(BaseModel):
    """One entry of a document's section outline."""
    title: str = Field(..., description="Heading text")
    level: int = Field(..., ge=0, description="Heading depth, 0 for the preamble")
    body: str = Field("", description="Non-heading lines under this heading")
    requirements: List[str] = Field(default_factory=list,
        description="Requirement clauses extracted from this section")


class ParsedDocument(BaseModel):
    """Output of DocumentIngestor."""
    full_text: str
    sections: List[RequirementSection] = Field(default_factory=list)
    token_estimate: int = Field(..., ge=0, description="ceil(len(full_text) / 4)")

    @property
    def requirement_sentences(self) -> List[str]:
        return [req for section in self.sections for req in section.requirements]


class Requirement(BaseModel):
    """An uploaded requirement document."""
    id: str = Field(default_factory=new_id)
    file_ref: str = Field(..., description="Reference to the raw uploaded file")
    media_type: str = Field(..., description="Declared media type of the upload")
    extracted_text: Optional[str] = Field(None, description="Populated by the first job that needs it")
    sections: List[RequirementSection] = Field(default_factory=list)
    token_estimate: Optional[int] = None


# ==================== Request Models ====================

class GenerationRequest(BaseModel):
    """Boundary request asking for test cases to be generated."""
    project_id: str
    requirement_id: str
    test_suite_id: str
    requester_id: str = Field(..., description="Identity the job is billed to")
    custom_prompt: Optional[str] = Field(None, description="Extra instructions appended to the prompt")
    include_negative_tests: bool = True
    include_edge_cases: bool = True
    include_boundary_tests: bool = True
    max_test_cases: int = Field(10, ge=1, le=MAX_TEST_CASES)
    testing_approach: str = Field("functional", description="e.g. functional, security, performance")
    model: Optional[str] = Field(None, description="Overrides the configured model")


class PromptParameters(BaseModel):
    """Everything PromptComposer substitutes into a template."""
    requirement_text: str
    project_name: str = ""
    project_description: str = ""
    testing_approach: str = "functional"
    max_test_cases: int = Field(10, ge=1, le=MAX_TEST_CASES)
    include_negative_tests: bool = True
    include_edge_cases: bool = True
    include_boundary_tests: bool = True
    existing_test_cases: List[str] = Field(default_factory=list)
    custom_prompt: Optional[str] = None


class PromptTemplate(BaseModel):
    """System/user message pair with named ``{placeholder}`` slots."""
    system_message: str
    user_template: str
    defaults: Dict[str, Any] = Field(default_factory=dict)
    max_tokens: int = Field(4000, ge=1, le=8000)
    temperature: float = Field(0.3, ge=0, le=2)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ComposedPrompt(BaseModel):
    """Messages ready to send, plus generation settings."""
    messages: List[ChatMessage]
    max_tokens: int
    temperature: float

    @property
    def char_count(self) -> int:
        return sum(len(m.content) for m in self.messages)

    @property
    def snapshot(self) -> str:
        """The exact text sent, as stored on the job."""
        return "\n\n".join(f"[{m.role}]\n{m.content}" for m in self.messages)


# ==================== Provider Models ====================

class TokenUsage(BaseModel):
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CompletionResult(BaseModel):
    """Raw provider answer. Usage counters are passed on verbatim."""
    choices: List[str]
    usage: TokenUsage
    model: str

    @property
    def text(self) -> str:
        return self.choices[0] if self.choices else ""


# ==================== Output Models ====================

class TestStep(BaseModel):
    step_number: int = Field(..., ge=1)
    action: str
    expected_result: str


class GeneratedTestCase(BaseModel):
    """A validated, normalized test case."""
    job_id: Optional[str] = None
    title: str = Field(..., min_length=5, max_length=255)
    description: str = ""
    priority: Priority = "Medium"
    type: TestCaseType = "Positive"
    preconditions: str = ""
    test_data: str = ""
    steps: List[TestStep]
    expected_result: str = ""
    risk_level: RiskLevel = "Medium"
    estimated_duration: int = Field(15, gt=0, le=480, description="Minutes")
    review_status: ReviewStatus = ReviewStatus.PENDING

    @field_validator('steps')
    @classmethod
    def validate_sequential_steps(cls, v):
        if not v:
            raise ValueError("Test case must have at least one step")
        for expected, step in enumerate(v, 1):
            if step.step_number != expected:
                raise ValueError("Step numbers must be sequential starting at 1")
        return v


class ValidationResult(BaseModel):
    """Kept test cases and the reasons candidates were dropped."""
    test_cases: List[GeneratedTestCase] = Field(default_factory=list)
    rejections: List[str] = Field(default_factory=list)


# ==================== Job & Usage Models ====================

class GenerationJob(BaseModel):
    """One unit of work turning a requirement into test cases."""
    id: str = Field(default_factory=new_id)
    status: JobStatus = JobStatus.QUEUED
    requirement_id: str
    project_id: str
    test_suite_id: str
    requester_id: str
    model: str
    prompt_snapshot: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: Decimal = Decimal("0")
    generated_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None

    @model_validator(mode='after')
    def validate_failure_has_message(self):
        if self.status == JobStatus.FAILED and not self.error_message:
            raise ValueError("A failed job must carry an error message")
        return self


class UsageRecord(BaseModel):
    """Append-only record of one billed provider call."""
    model_config = ConfigDict(frozen=True)

    requester_id: str
    project_id: Optional[str] = None
    job_id: Optional[str] = None
    model: str
    prompt_tokens: int = Field(..., ge=0)
    completion_tokens: int = Field(..., ge=0)
    cost: Decimal
    timestamp: datetime = Field(default_factory=utcnow)


class StatusEvent(BaseModel):
    """Payload published to the notification sink."""
    job_id: str
    status: JobStatus
    generated_count: Optional[int] = None
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class AdmissionResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.QUEUED
