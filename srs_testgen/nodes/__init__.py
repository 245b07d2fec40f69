"""
Deterministic pipeline stages.

1. DocumentIngestor - text, section outline and requirement clauses from an upload
2. PromptComposer - system/user messages from a template and generation parameters
"""

from .ingestor import DocumentIngestor, MediaType
from .composer import PromptComposer, DEFAULT_TEMPLATE

__all__ = [
    "DocumentIngestor",
    "MediaType",
    "PromptComposer",
    "DEFAULT_TEMPLATE"
]
