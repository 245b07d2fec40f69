from __future__ import annotations
import logging
import os
import tomllib
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

USER_CFG = Path.home() / ".config" / "srs-testgen" / "config.toml"
PROJECT_CFG = Path.cwd() / "srs-testgen.toml"
ENV_PREFIX = "SRS_TESTGEN_"

DEFAULTS: Dict[str, object] = {
    "provider": "openai",
    "model": None,  # picked per provider, see DEFAULT_MODELS
    "base_url": None,
    "api_key": None,
    "workers": 4,
    "queue_size": 100,
    "provider_timeout": 60.0,
    "job_timeout": 300.0,
    "max_prompt_chars": 100_000,
    "max_tokens": 4000,
    "temperature": 0.3,
    "monthly_cost_limit": Decimal("50.00"),
    "monthly_request_limit": 500,
    "project_monthly_cost_limit": None,
    "recent_titles_limit": 10,
    "estimated_tokens_per_case": 250,
}

DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
}

_FLOATS = {"provider_timeout", "job_timeout", "temperature"}
_INTS = {"workers", "queue_size", "max_prompt_chars", "max_tokens",
         "monthly_request_limit", "recent_titles_limit", "estimated_tokens_per_case"}
_DECIMALS = {"monthly_cost_limit", "project_monthly_cost_limit"}


@dataclass(frozen=True)
class PipelineConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    workers: int = 4
    queue_size: int = 100
    provider_timeout: float = 60.0
    job_timeout: float = 300.0
    max_prompt_chars: int = 100_000
    max_tokens: int = 4000
    temperature: float = 0.3
    monthly_cost_limit: Decimal = Decimal("50.00")
    monthly_request_limit: int = 500
    project_monthly_cost_limit: Optional[Decimal] = None
    recent_titles_limit: int = 10
    estimated_tokens_per_case: int = 250

    def __post_init__(self):
        if self.workers < 1:
            raise ConfigurationError("workers must be at least 1")
        if self.queue_size < 1:
            raise ConfigurationError("queue_size must be at least 1")
        if self.provider_timeout <= 0 or self.job_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")
        if not 1 <= self.max_tokens <= 8000:
            raise ConfigurationError("max_tokens must be between 1 and 8000")
        if not 0 <= self.temperature <= 2:
            raise ConfigurationError("temperature must be between 0 and 2")


def _read_toml(path: Path) -> Dict:
    if not path.exists():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def init_default_config(force: bool = False) -> Path:
    target = USER_CFG
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists() and not force:
        return target
    text = """# srs-testgen config (user)
# You can override any of these in a project-local ./srs-testgen.toml
# or with SRS_TESTGEN_<NAME> environment variables.

# Provider
provider = "openai"          # openai | anthropic | mock
# model = "gpt-4o-mini"      # default depends on the provider
# base_url = "http://localhost:8080/v1"

# Workers
workers = 4
queue_size = 100
provider_timeout = 60.0      # seconds per provider call
job_timeout = 300.0          # seconds per job, wall clock

# Prompt
max_prompt_chars = 100000
max_tokens = 4000
temperature = 0.3
recent_titles_limit = 10

# Quotas (per requester, calendar month, USD)
monthly_cost_limit = "50.00"
monthly_request_limit = 500
estimated_tokens_per_case = 250
"""
    target.write_text(text)
    return target


def _coerce(name: str, v):
    if v is None:
        return None
    try:
        if name in _FLOATS:
            return float(v)
        if name in _INTS:
            return int(v)
        if name in _DECIMALS:
            s = str(v).strip().lower()
            return None if s in {"", "none"} else Decimal(str(v))
    except (ValueError, TypeError, InvalidOperation) as e:
        raise ConfigurationError(f"Invalid value for {name}: {v!r}") from e
    return v


def merged_config() -> Dict:
    cfg_user = _read_toml(USER_CFG)
    cfg_proj = _read_toml(PROJECT_CFG)

    # environment overrides
    env = {k: os.getenv(ENV_PREFIX + k.upper()) for k in DEFAULTS}

    # merge: defaults -> user -> project -> env
    settings = DEFAULTS.copy()

    def overlay(d: Dict):
        if not isinstance(d, dict):
            return
        for k in settings.keys():
            if k in d and d[k] is not None:
                settings[k] = _coerce(k, d[k])

    overlay(cfg_user)
    overlay(cfg_proj)
    overlay(env)
    return settings


def load_config(**overrides) -> PipelineConfig:
    """Build the effective configuration; keyword overrides win over every layer."""
    settings = merged_config()
    known = {f.name for f in fields(PipelineConfig)}
    for k, v in overrides.items():
        if k not in known:
            raise ConfigurationError(f"Unknown configuration key: {k}")
        if v is not None:
            settings[k] = _coerce(k, v)

    # vendor defaults once the provider is final
    if not settings["model"]:
        settings["model"] = DEFAULT_MODELS.get(settings["provider"], DEFAULT_MODELS["openai"])
    if not settings["api_key"]:
        key_var = "ANTHROPIC_API_KEY" if settings["provider"] == "anthropic" else "OPENAI_API_KEY"
        settings["api_key"] = os.getenv(key_var)

    logger.debug(f"Effective configuration: provider={settings['provider']} model={settings['model']} "
                 f"workers={settings['workers']}")
    return PipelineConfig(**settings)
