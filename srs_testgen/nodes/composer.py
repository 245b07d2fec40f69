"""
PromptComposer Node (Deterministic)

Builds the system/user message pair for test case generation from a
PromptTemplate, the generation parameters, and project context.
"""

from __future__ import annotations
import logging
import re
from typing import Any, Dict, List, Optional

from ..exceptions import PromptTooLargeError
from ..models import ChatMessage, ComposedPrompt, PromptParameters, PromptTemplate

logger = logging.getLogger(__name__)

MAX_EXISTING_TEST_CASES = 10
DEFAULT_MAX_PROMPT_CHARS = 100_000

_PLACEHOLDER = re.compile(r'\{(\w+)\}')

SYSTEM_MESSAGE = """You are a senior QA engineer generating test cases from software requirements.
Return ONLY a single JSON object. No markdown formatting, no explanations.

The object must have one key, "testCases", holding an array. Each item has:
  "title": short descriptive title (5-255 characters)
  "description": what the test verifies
  "priority": "Low", "Medium", "High" or "Critical"
  "type": "Positive", "Negative", "Edge Case" or "Boundary"
  "preconditions": state required before the first step
  "testData": concrete input data
  "steps": ordered array of {"stepNumber": 1, "action": "...", "expectedResult": "..."}
  "expectedResult": overall expected outcome
  "riskLevel": "Low", "Medium" or "High"
  "estimatedDuration": minutes to execute, 1-480

Example:
{
  "testCases": [
    {
      "title": "Login succeeds with valid credentials",
      "description": "Verify a registered user can sign in",
      "priority": "High",
      "type": "Positive",
      "preconditions": "User account exists",
      "testData": "username=alice, password=Secret123!",
      "steps": [
        {"stepNumber": 1, "action": "Open the login page", "expectedResult": "Login form is shown"},
        {"stepNumber": 2, "action": "Submit valid credentials", "expectedResult": "Dashboard is shown"}
      ],
      "expectedResult": "User is signed in",
      "riskLevel": "Medium",
      "estimatedDuration": 5
    }
  ]
}"""

USER_TEMPLATE = """Generate up to {max_test_cases} test cases for the requirements below.

PROJECT: {project_name}
{project_description}

TESTING APPROACH: {testing_approach}

COVERAGE:
{coverage_guidance}

REQUIREMENTS:
{requirement_text}
{existing_test_cases}{custom_instructions}
STEP REQUIREMENTS:
- Be explicit and actionable ("Click the Submit button", not "Submit the form")
- Give every step an expected result
- Use realistic test data"""

DEFAULT_TEMPLATE = PromptTemplate(
    system_message=SYSTEM_MESSAGE,
    user_template=USER_TEMPLATE,
    defaults={"project_name": "Unnamed project", "testing_approach": "functional"},
    max_tokens=4000,
    temperature=0.3,
)


class PromptComposer:
    """
    Compose generation prompts.

    The size check runs before any provider call, so a prompt that is too
    large fails without incurring cost.
    """

    def __init__(
        self,
        template: Optional[PromptTemplate] = None,
        max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS
    ):
        self.template = template or DEFAULT_TEMPLATE
        self.max_prompt_chars = max_prompt_chars

    def compose(
        self,
        params: PromptParameters,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> ComposedPrompt:
        values = self._build_values(params)
        user_message = self.render(self.template.user_template, values)

        prompt = ComposedPrompt(
            messages=[
                ChatMessage(role="system", content=self.template.system_message),
                ChatMessage(role="user", content=user_message),
            ],
            max_tokens=max_tokens or self.template.max_tokens,
            temperature=self.template.temperature if temperature is None else temperature,
        )

        if prompt.char_count > self.max_prompt_chars:
            raise PromptTooLargeError(prompt.char_count, self.max_prompt_chars)

        logger.debug(f"Composed prompt with {prompt.char_count} characters")
        return prompt

    @staticmethod
    def render(template: str, values: Dict[str, Any]) -> str:
        """Substitute known ``{name}`` placeholders; unknown braces are left as-is."""
        def replace(match):
            key = match.group(1)
            return str(values[key]) if key in values else match.group(0)
        return _PLACEHOLDER.sub(replace, template)

    def _build_values(self, params: PromptParameters) -> Dict[str, Any]:
        values = dict(self.template.defaults)
        values.update({
            "requirement_text": params.requirement_text.strip(),
            "max_test_cases": params.max_test_cases,
            "coverage_guidance": self._coverage_guidance(params),
            "existing_test_cases": self._existing_section(params.existing_test_cases),
            "custom_instructions": self._custom_section(params.custom_prompt),
            "project_description": params.project_description.strip(),
        })
        if params.project_name:
            values["project_name"] = params.project_name
        if params.testing_approach:
            values["testing_approach"] = params.testing_approach
        return values

    @staticmethod
    def _coverage_guidance(params: PromptParameters) -> str:
        lines = ["- Positive (happy path) cases for every requirement"]
        if params.include_negative_tests:
            lines.append("- Negative cases: invalid input, unauthorized access, failures")
        if params.include_edge_cases:
            lines.append("- Edge cases: empty values, special characters, unusual sequences")
        if params.include_boundary_tests:
            lines.append("- Boundary cases: minimum, maximum and just-outside limits")
        return "\n".join(lines)

    @staticmethod
    def _existing_section(titles: List[str]) -> str:
        titles = [t.strip() for t in titles if t and t.strip()][:MAX_EXISTING_TEST_CASES]
        if not titles:
            return ""
        listed = "\n".join(f"- {t}" for t in titles)
        return f"\nEXISTING TEST CASES (do not duplicate):\n{listed}\n"

    @staticmethod
    def _custom_section(custom_prompt: Optional[str]) -> str:
        if not custom_prompt or not custom_prompt.strip():
            return ""
        return f"\nADDITIONAL INSTRUCTIONS:\n{custom_prompt.strip()}\n"
