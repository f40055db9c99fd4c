"""
Cognitive CV extraction package.

This package validates, scores and audits LLM extraction answers for CV
documents, keeps a feedback store of human corrections for few-shot
prompting, and orchestrates extraction requests end to end.
"""

from .schemas import (
    Evidence,
    UnmappedCategory,
    UnmappedSegment,
    Person,
    Address,
    Contact,
    Language,
    Skill,
    Experience,
    Education,
    CvData,
    ResponseMetadata,
    CognitiveResponse,
)

from .adapter import (
    SchemaDialect,
    detect_dialect,
    to_canonical,
    to_dialect,
)

from .field_normalization import (
    is_likely_job_title,
    is_likely_company_name,
    is_valid_person_name,
    is_valid_email,
    normalize_phone,
    parse_cefr_level,
    normalize_canton,
)

from .validator import (
    AutoCorrection,
    ValidationOutcome,
    ResponseValidator,
    validate_cognitive_response,
)

from .confidence import (
    ConfidenceStatus,
    ConfidenceFactors,
    ConfidenceWeights,
    ConfidenceThresholds,
    ConfidenceResult,
    calculate_confidence,
    get_confidence_level,
    default_factors,
    score_response_fields,
)

from .completeness import (
    CompletenessPolicy,
    MissingLine,
    CompletenessReport,
    CompletenessValidator,
    build_re_extraction_prompt,
)

from .examples import (
    FewShotExample,
    BUILTIN_EXAMPLES,
    load_examples_from_yaml,
    save_examples_to_yaml,
    format_examples_for_prompt,
)

from .feedback import (
    CorrectionRecord,
    SegmentAssignment,
    FieldStats,
    FieldSuggestion,
    FeedbackStore,
    extract_keywords,
    hash_context,
)

from .llm_provider import (
    LLMProvider,
    RateLimitConfig,
    LLMCompletion,
    JsonCompletionClient,
    create_raw_client,
    create_completion_client,
    classify_llm_error,
)

from .state_machine import (
    ParserState,
    EventType,
    Event,
    ErrorCode,
    RetryPolicy,
    MachineState,
    InvalidTransitionError,
    transition,
    backoff_delay,
)

from .merge import merge_responses

from .observability import (
    DecisionType,
    LayerDecision,
    ExtractionTrace,
)

from .parser import (
    CvParser,
    ParseSuccess,
    ParseFailure,
    ParseResult,
    is_llm_enabled,
)

__all__ = [
    # Schemas
    "Evidence",
    "UnmappedCategory",
    "UnmappedSegment",
    "Person",
    "Address",
    "Contact",
    "Language",
    "Skill",
    "Experience",
    "Education",
    "CvData",
    "ResponseMetadata",
    "CognitiveResponse",
    # Dialects
    "SchemaDialect",
    "detect_dialect",
    "to_canonical",
    "to_dialect",
    # Field normalization
    "is_likely_job_title",
    "is_likely_company_name",
    "is_valid_person_name",
    "is_valid_email",
    "normalize_phone",
    "parse_cefr_level",
    "normalize_canton",
    # Validation
    "AutoCorrection",
    "ValidationOutcome",
    "ResponseValidator",
    "validate_cognitive_response",
    # Confidence
    "ConfidenceStatus",
    "ConfidenceFactors",
    "ConfidenceWeights",
    "ConfidenceThresholds",
    "ConfidenceResult",
    "calculate_confidence",
    "get_confidence_level",
    "default_factors",
    "score_response_fields",
    # Completeness
    "CompletenessPolicy",
    "MissingLine",
    "CompletenessReport",
    "CompletenessValidator",
    "build_re_extraction_prompt",
    # Examples & feedback
    "FewShotExample",
    "BUILTIN_EXAMPLES",
    "load_examples_from_yaml",
    "save_examples_to_yaml",
    "format_examples_for_prompt",
    "CorrectionRecord",
    "SegmentAssignment",
    "FieldStats",
    "FieldSuggestion",
    "FeedbackStore",
    "extract_keywords",
    "hash_context",
    # LLM transport
    "LLMProvider",
    "RateLimitConfig",
    "LLMCompletion",
    "JsonCompletionClient",
    "create_raw_client",
    "create_completion_client",
    "classify_llm_error",
    # State machine
    "ParserState",
    "EventType",
    "Event",
    "ErrorCode",
    "RetryPolicy",
    "MachineState",
    "InvalidTransitionError",
    "transition",
    "backoff_delay",
    # Orchestration
    "merge_responses",
    "DecisionType",
    "LayerDecision",
    "ExtractionTrace",
    "CvParser",
    "ParseSuccess",
    "ParseFailure",
    "ParseResult",
    "is_llm_enabled",
]
