"""
Response validation for LLM-generated test cases.

Model output is untrusted and loosely structured, so it is handled in three
phases, each with its own failure:
1. Extraction - the span from the first ``{`` to the last ``}`` (NoStructuredContent)
2. Tolerant parse - trailing commas and key case are forgiven (MalformedResponse)
3. Normalization - per-item coercion; bad items are dropped and logged, never raised
"""

from __future__ import annotations
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import MalformedResponseError, NoStructuredContentError
from .models import GeneratedTestCase, TestStep, ValidationResult

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 5
MAX_TITLE_LENGTH = 255
MAX_DURATION_MINUTES = 480
DEFAULT_DURATION_MINUTES = 15
MISSING_ACTION = "Action not specified"
MISSING_EXPECTED = "Expected result not specified"

_TRAILING_COMMA = re.compile(r',(\s*[}\]])')
_LEADING_NUMBER = re.compile(r'^\s*(\d+(?:\.\d+)?)')

_PRIORITIES = {
    "low": "Low", "medium": "Medium", "high": "High", "critical": "Critical",
    "p0": "Critical", "p1": "High", "p2": "Medium", "p3": "Low",
}
_TYPES = {
    "positive": "Positive", "negative": "Negative", "edgecase": "Edge Case",
    "edge": "Edge Case", "boundary": "Boundary",
}
_RISKS = {"low": "Low", "medium": "Medium", "high": "High"}


def _key(name: str) -> str:
    """Lookup key ignoring case, underscores, dashes and spaces."""
    return re.sub(r'[\s_\-]', '', name).lower()


def _fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {_key(str(k)): v for k, v in obj.items()}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value).strip()


def extract_json_block(text: str) -> str:
    """Return the substring from the first ``{`` to the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise NoStructuredContentError("Model output contains no JSON object")
    return text[start:end + 1]


def parse_tolerant_json(candidate: str) -> Any:
    """Parse JSON, forgiving trailing commas."""
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    repaired = _TRAILING_COMMA.sub(r'\1', candidate)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as e:
        logger.debug(f"Attempted to parse: {candidate[:200]}...")
        raise MalformedResponseError(f"Invalid JSON in model output: {e}", candidate) from e


class ResponseValidator:
    """Turn raw model output into normalized test cases."""

    def __init__(self, max_test_cases: Optional[int] = None):
        self.max_test_cases = max_test_cases

    def validate(self, response: str) -> ValidationResult:
        """
        Validate a raw provider response.

        Raises:
            NoStructuredContentError: No ``{...}`` span in the text
            MalformedResponseError: The span is not JSON or has no test case array
        """
        candidate = extract_json_block(response)
        data = parse_tolerant_json(candidate)
        items = self._find_test_cases(data, candidate)

        result = ValidationResult()
        for index, item in enumerate(items, 1):
            test_case, reason = self.normalize_test_case(item)
            if test_case is None:
                message = f"Test case #{index} rejected: {reason}"
                logger.warning(message)
                result.rejections.append(message)
            else:
                result.test_cases.append(test_case)

        if self.max_test_cases is not None and len(result.test_cases) > self.max_test_cases:
            dropped = len(result.test_cases) - self.max_test_cases
            logger.info(f"Keeping first {self.max_test_cases} test cases, dropping {dropped} extra")
            result.test_cases = result.test_cases[:self.max_test_cases]

        logger.info(f"Validated {len(result.test_cases)} test cases, rejected {len(result.rejections)}")
        return result

    @staticmethod
    def _find_test_cases(data: Any, candidate: str) -> List[Any]:
        if isinstance(data, dict):
            for key, value in data.items():
                if _key(str(key)) == "testcases":
                    if isinstance(value, list):
                        return value
                    raise MalformedResponseError("'testCases' is not an array", candidate)
        raise MalformedResponseError("Model output has no 'testCases' array", candidate)

    def normalize_test_case(self, item: Any) -> Tuple[Optional[GeneratedTestCase], Optional[str]]:
        """Return ``(test_case, None)`` or ``(None, rejection_reason)``."""
        if not isinstance(item, dict):
            return None, "not a JSON object"
        f = _fields(item)

        title = _text(f.get("title"))
        if not title:
            return None, "missing title"
        if not MIN_TITLE_LENGTH <= len(title) <= MAX_TITLE_LENGTH:
            return None, f"title length {len(title)} outside [{MIN_TITLE_LENGTH}, {MAX_TITLE_LENGTH}]"

        raw_steps = f.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            return None, f"'{title}' has no steps"

        test_case = GeneratedTestCase(
            title=title,
            description=_text(f.get("description")),
            priority=self._coerce_choice(f.get("priority"), _PRIORITIES, "Medium"),
            type=self._coerce_choice(f.get("type"), _TYPES, "Positive"),
            preconditions=_text(f.get("preconditions")),
            test_data=_text(f.get("testdata")),
            steps=self._normalize_steps(raw_steps),
            expected_result=_text(f.get("expectedresult")),
            risk_level=self._coerce_choice(f.get("risklevel"), _RISKS, "Medium"),
            estimated_duration=self._coerce_duration(f.get("estimatedduration")),
        )
        return test_case, None

    @staticmethod
    def _coerce_choice(value: Any, choices: Dict[str, str], default: str) -> str:
        if not isinstance(value, str):
            return default
        k = _key(value)
        if k.endswith("test") and k != "test":
            k = k[:-4]
        return choices.get(k, default)

    @staticmethod
    def _coerce_duration(value: Any) -> int:
        if isinstance(value, bool):
            return DEFAULT_DURATION_MINUTES
        if isinstance(value, (int, float)):
            minutes = float(value)
        elif isinstance(value, str) and _LEADING_NUMBER.match(value):
            minutes = float(_LEADING_NUMBER.match(value).group(1))
        else:
            return DEFAULT_DURATION_MINUTES
        # json.loads accepts NaN and Infinity
        if not math.isfinite(minutes):
            return DEFAULT_DURATION_MINUTES
        rounded = round(minutes)
        if not 0 < rounded <= MAX_DURATION_MINUTES:
            return DEFAULT_DURATION_MINUTES
        return rounded

    @staticmethod
    def _normalize_steps(raw_steps: List[Any]) -> List[TestStep]:
        """Renumber from 1 in the given order, filling blank fields with placeholders."""
        steps = []
        for number, raw in enumerate(raw_steps, 1):
            if isinstance(raw, dict):
                f = _fields(raw)
                action = _text(f.get("action") or f.get("step") or f.get("description"))
                expected = _text(f.get("expectedresult") or f.get("expected"))
            else:
                action, expected = _text(raw), ""
            steps.append(TestStep(
                step_number=number,
                action=action or MISSING_ACTION,
                expected_result=expected or MISSING_EXPECTED,
            ))
        return steps


def validate_test_case_response(response: str, max_test_cases: Optional[int] = None) -> ValidationResult:
    """Convenience function to validate a raw provider response."""
    return ResponseValidator(max_test_cases).validate(response)
