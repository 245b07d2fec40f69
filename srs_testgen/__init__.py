"""
SRS Test Case Generator

Turns uploaded requirement documents into draft test cases through an
asynchronous, quota-governed LLM generation pipeline.
"""

__version__ = "0.1.0"
__all__ = [
    "JobOrchestrator",
    "GenerationRequest",
    "GenerationJob",
    "JobStatus",
    "PipelineConfig",
    "PipelineError",
    "QuotaExceededError",
]

from .config import PipelineConfig
from .models import GenerationRequest, GenerationJob, JobStatus
from .workflow import JobOrchestrator
from .exceptions import PipelineError, QuotaExceededError
