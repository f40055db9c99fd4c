"""
Configuration management for CV extraction.

Supports:
- Loading base config from YAML
- Merging deployment overrides
- Config validation with Pydantic
- Config hashing for reproducibility
- Reading upstream LLM credentials from the environment
"""

import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("azure", "openai", "anthropic")

DEFAULT_TENANT_ID = "00000000-0000-0000-0000-000000000000"
DEFAULT_AZURE_API_VERSION = "2024-12-01-preview"

DEFAULT_IGNORABLE_PATTERNS = [
    r"^\s*$",                   # blank
    r"^\d+\s*$",                # bare page numbers
    r"(?i)^page\s*\d+",         # "Page 1"
    r"(?i)^seite\s*\d+",        # "Seite 1"
    r"^[-─═_]{3,}$",            # separator runs
    r"^[•●○◦▪▫]\s*$",           # empty bullets
    r"^\s*[|│]\s*$",            # vertical bars
    r"(?i)^curriculum\s*vitae$",
    r"(?i)^lebenslauf$",
    r"(?i)^resume$",
    r"(?i)^cv$",
]


# =============================================================================
# Pydantic Config Models
# =============================================================================


class PackerConfig(BaseModel):
    """Line corpus builder limits."""

    header_lines_limit: int = 80
    contact_lines_limit: int = 50
    kvp_limit: int = 60
    section_lines_limit: int = 500
    token_hard_cap: int = 16000
    prompt_overhead_tokens: int = 500
    chars_per_token: float = 3.5
    token_estimator: str = "heuristic"  # heuristic | tiktoken
    low_value_floor: int = 10  # skills/certificates are trimmed down to this first
    section_floor: int = 50  # then every section down to this
    raw_text_header_lines: int = 50


class CompletenessConfig(BaseModel):
    """Completeness audit policy."""

    min_significant_length: int = 3
    ignorable_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORABLE_PATTERNS))
    token_limit_ratio: float = 0.9375  # 7500 of 8000


class ValidationConfig(BaseModel):
    """Response validator settings."""

    min_thought_length: int = 50
    phone_regions: list[str] = Field(default_factory=lambda: ["CH", "DE", "AT", "FR", "IT", "GB", "US"])
    normalize_language_levels: bool = True
    normalize_cantons: bool = True


class ConfidenceScoreConfig(BaseModel):
    """Confidence scoring configuration."""

    autofill_threshold: float = 0.90
    review_threshold: float = 0.70
    source_confidence: float = 0.25
    validation_pass: float = 0.25
    label_proximity: float = 0.15
    uniqueness: float = 0.15
    repetition: float = 0.10
    section_match: float = 0.10


class ParserConfig(BaseModel):
    """Extraction orchestrator settings."""

    tenant_id: str = DEFAULT_TENANT_ID
    max_retries: int = 2
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    timeout_ms: int = 90000
    enable_feedback_loop: bool = True
    max_few_shot_examples: int = 5
    enable_auto_re_extraction: bool = True
    re_extraction_threshold: float = 95.0
    max_output_tokens: int = 4000
    re_extraction_max_tokens: int = 2000
    temperature: float = 0.0


class FeedbackConfig(BaseModel):
    """Feedback / few-shot store settings."""

    db_path: str = ":memory:"
    tenant_id: str = DEFAULT_TENANT_ID
    max_examples: int = 5
    cache_ttl_seconds: float = 60.0
    critical_fields: list[str] = Field(
        default_factory=lambda: ["firstName", "lastName", "nationality", "email"]
    )
    min_observations: int = 5
    accuracy_threshold: float = 0.8
    builtin_examples_path: Optional[str] = None  # extra built-ins (YAML)


class LLMConfig(BaseModel):
    """Upstream LLM completion service."""

    provider: str = "azure"  # azure | openai | anthropic
    model: Optional[str] = None  # deployment name for azure
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    api_version: str = DEFAULT_AZURE_API_VERSION
    delay_between_calls: float = 0.0
    requests_per_minute: Optional[int] = None

    def resolved(self) -> "LLMConfig":
        """Fill unset fields from the environment."""
        data = self.model_dump()
        provider = self.provider.lower()
        if provider == "azure":
            data["endpoint"] = self.endpoint or os.environ.get("AZURE_OPENAI_ENDPOINT")
            data["api_key"] = self.api_key or os.environ.get("AZURE_OPENAI_KEY")
            data["model"] = self.model or os.environ.get("AZURE_OPENAI_DEPLOYMENT")
            data["api_version"] = os.environ.get("AZURE_OPENAI_API_VERSION") or self.api_version
        elif provider == "openai":
            data["api_key"] = self.api_key or os.environ.get("OPENAI_API_KEY")
            data["model"] = self.model or "gpt-4o-mini"
        elif provider == "anthropic":
            data["api_key"] = self.api_key or os.environ.get("ANTHROPIC_API_KEY")
            data["model"] = self.model or "claude-sonnet-4-20250514"
        return LLMConfig.model_validate(data)

    def is_configured(self) -> bool:
        """Whether enough settings are present to build a client."""
        if self.provider.lower() not in SUPPORTED_PROVIDERS:
            return False
        if not self.api_key or not self.model:
            return False
        if self.provider.lower() == "azure":
            return bool(self.endpoint) and self.endpoint.startswith(("http://", "https://"))
        return True


class AppConfig(BaseModel):
    """Complete extraction configuration."""

    packer: PackerConfig = Field(default_factory=PackerConfig)
    completeness: CompletenessConfig = Field(default_factory=CompletenessConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    confidence: ConfidenceScoreConfig = Field(default_factory=ConfidenceScoreConfig)
    parser: ParserConfig = Field(default_factory=ParserConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    def config_hash(self) -> str:
        """
        Generate hash of config for reproducibility tracking.

        Credentials are excluded so the hash is stable across environments.

        Returns:
            SHA256 hash of serialized config (first 12 chars)
        """
        config_json = self.model_dump_json(exclude={"llm": {"api_key", "endpoint"}})
        return hashlib.sha256(config_json.encode()).hexdigest()[:12]


def is_llm_enabled() -> bool:
    """LLM extraction feature flag (CV_LLM_ENABLED=true|1)."""
    return os.environ.get("CV_LLM_ENABLED", "").strip().lower() in ("true", "1")


# =============================================================================
# Config Loading Functions
# =============================================================================


def load_yaml(path: Union[str, Path]) -> dict[str, Any]:
    """Load YAML file and return as dict."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.

    Args:
        base: Base dictionary
        override: Override dictionary

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(
    config_path: Union[str, Path],
    base_path: Optional[Union[str, Path]] = None,
) -> AppConfig:
    """
    Load extraction configuration from YAML.

    Args:
        config_path: Path to config file
        base_path: Optional base config the file is merged over

    Returns:
        AppConfig with all settings resolved
    """
    config_path = Path(config_path)
    config_dict = load_yaml(config_path)

    if base_path is not None:
        base_dict = load_yaml(base_path)
        config_dict = deep_merge(base_dict, config_dict)
        logger.info(f"Merged config from {config_path} with base {base_path}")

    config = AppConfig.model_validate(config_dict)
    logger.info(f"Loaded config from {config_path} (hash: {config.config_hash()})")
    return config


def save_config(config: AppConfig, output_path: Union[str, Path]) -> Path:
    """
    Save resolved config to YAML file.

    Credentials are never written.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump(exclude={"llm": {"api_key"}})

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    logger.info(f"Saved config to {output_path}")
    return output_path


# =============================================================================
# Config Validation
# =============================================================================


def validate_config(config: AppConfig) -> list[str]:
    """
    Validate config and return list of warnings/issues.

    Args:
        config: AppConfig to validate

    Returns:
        List of warning messages (empty if all good)
    """
    warnings = []

    if not 0 <= config.parser.re_extraction_threshold <= 100:
        warnings.append(
            f"re_extraction_threshold={config.parser.re_extraction_threshold} "
            "is outside 0-100"
        )

    if config.parser.max_retries < 0:
        warnings.append(f"max_retries={config.parser.max_retries} is negative")

    if config.parser.re_extraction_max_tokens >= config.parser.max_output_tokens:
        warnings.append(
            "re_extraction_max_tokens should be smaller than max_output_tokens"
        )

    if config.validation.min_thought_length < 1:
        warnings.append("min_thought_length below 1 disables the reasoning requirement")

    if not config.validation.phone_regions:
        warnings.append("No phone regions configured, phone numbers will never normalize")

    valid_estimators = ["heuristic", "tiktoken"]
    if config.packer.token_estimator not in valid_estimators:
        warnings.append(
            f"Invalid token_estimator: {config.packer.token_estimator}. "
            f"Valid options: {valid_estimators}"
        )

    valid_providers = list(SUPPORTED_PROVIDERS)
    if config.llm.provider.lower() not in valid_providers:
        warnings.append(
            f"Invalid llm provider: {config.llm.provider}. Valid options: {valid_providers}"
        )

    for pattern in config.completeness.ignorable_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            warnings.append(f"Invalid ignorable pattern {pattern!r}: {e}")

    if not 0 < config.completeness.token_limit_ratio <= 1:
        warnings.append(
            f"token_limit_ratio={config.completeness.token_limit_ratio} should be in (0, 1]"
        )

    return warnings
