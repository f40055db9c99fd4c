"""
CV extraction orchestrator.

Drives one extraction request through the state machine in
`state_machine.py`: preflight checks, prompt assembly with few-shot
corrections, the LLM call, validation with corrective retries, the
completeness check, and at most one narrow re-extraction plus merge.

Upstream failures never raise; they come back as a ParseFailure with a typed
error code. Programmer errors (illegal state transitions, bad arguments) do
raise.

Usage:
    config = load_config("configs/base.yaml")
    parser = CvParser.from_config(config)
    result = parser.parse_document(layout)
    if result.success:
        print(result.completeness.summary)
    else:
        print(result.error_code, result.error)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import duckdb

from ..config import AppConfig, is_llm_enabled
from ..parse.models import DocumentRep, PackedCorpus
from ..parse.packer import CorpusPacker
from .adapter import SchemaDialect
from .completeness import CompletenessPolicy, CompletenessReport, CompletenessValidator
from .confidence import (
    ConfidenceResult,
    ConfidenceStatus,
    ConfidenceThresholds,
    ConfidenceWeights,
    score_response_fields,
)
from .feedback import FeedbackStore
from .llm_provider import (
    LLMResponseFormatError,
    classify_llm_error,
    create_completion_client,
    parse_json_content,
)
from .merge import merge_responses
from .observability import DecisionType, ExtractionTrace, LayerDecision
from .prompts import (
    build_messages,
    build_re_extraction_user_prompt,
    build_retry_prompt,
    build_system_prompt,
    build_user_prompt,
)
from .schemas import CognitiveResponse
from .state_machine import (
    ErrorCode,
    Event,
    EventType,
    MachineState,
    ParserState,
    RetryPolicy,
    backoff_delay,
    transition,
)
from .validator import AutoCorrection, ResponseValidator, ValidationOutcome

logger = logging.getLogger(__name__)

__all__ = [
    "CvParser",
    "ParseFailure",
    "ParseResult",
    "ParseSuccess",
    "is_llm_enabled",
]

ERROR_MESSAGES = {
    ErrorCode.LLM_DISABLED: "LLM extraction is disabled (set CV_LLM_ENABLED=true)",
    ErrorCode.LLM_NOT_CONFIGURED: "LLM provider is not configured (endpoint, key or model missing)",
    ErrorCode.VALIDATION_FAILED: "Response validation failed after retries",
    ErrorCode.LLM_AUTH_FAILED: "LLM authentication failed",
    ErrorCode.LLM_TIMEOUT: "LLM request timed out",
    ErrorCode.LLM_RATE_LIMITED: "LLM rate limit exceeded",
    ErrorCode.LLM_ERROR: "LLM extraction failed",
}

TOKEN_LIMIT_WARNING = "Token limit nearly reached - check for truncated data"


# =============================================================================
# Results
# =============================================================================

@dataclass
class ParseSuccess:
    """Validated extraction plus everything needed to review it."""
    response: CognitiveResponse
    completeness: CompletenessReport
    auto_corrections: list[AutoCorrection] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    flagged_fields: list[str] = field(default_factory=list)
    confidence: dict[str, ConfidenceResult] = field(default_factory=dict)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0
    retry_count: int = 0
    re_extraction_performed: bool = False
    dialect: SchemaDialect = SchemaDialect.CAMEL
    trace: Optional[ExtractionTrace] = None
    success: bool = field(default=True, init=False)

    @property
    def thought_process(self) -> str:
        return self.response.thought_process

    @property
    def extracted_data(self):
        return self.response.extracted_data

    @property
    def unmapped_segments(self):
        return self.response.unmapped_segments

    @property
    def implicit_mappings(self) -> list[str]:
        return self.response.metadata.implicit_mappings_applied

    @property
    def is_data_complete(self) -> bool:
        return self.completeness.is_complete

    @property
    def review_fields(self) -> list[str]:
        """Flagged fields plus any scored field that is not safe to autofill."""
        fields = list(self.flagged_fields)
        for name, result in self.confidence.items():
            if result.status != ConfidenceStatus.AUTOFILL and name not in fields:
                fields.append(name)
        return fields

    def to_dict(self) -> dict:
        return {
            "success": True,
            "thought_process": self.thought_process,
            "extracted_data": self.response.to_dict()["extracted_data"],
            "unmapped_segments": self.response.to_dict()["unmapped_segments"],
            "auto_corrections": [c.to_dict() for c in self.auto_corrections],
            "implicit_mappings": list(self.implicit_mappings),
            "warnings": list(self.warnings),
            "flagged_fields": list(self.flagged_fields),
            "review_fields": self.review_fields,
            "confidence": {name: r.to_dict() for name, r in self.confidence.items()},
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "retry_count": self.retry_count,
            "re_extraction_performed": self.re_extraction_performed,
            "is_data_complete": self.is_data_complete,
            "completeness_report": self.completeness.to_dict(),
        }


@dataclass
class ParseFailure:
    """Terminal failure with a typed error code."""
    error: str
    error_code: ErrorCode
    validation_errors: list[str] = field(default_factory=list)
    flagged_fields: list[str] = field(default_factory=lambda: ["all"])
    latency_ms: int = 0
    retry_count: int = 0
    trace: Optional[ExtractionTrace] = None
    success: bool = field(default=False, init=False)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.error,
            "error_code": self.error_code.value,
            "validation_errors": list(self.validation_errors),
            "flagged_fields": list(self.flagged_fields),
            "latency_ms": self.latency_ms,
            "retry_count": self.retry_count,
        }


ParseResult = Union[ParseSuccess, ParseFailure]


@dataclass
class _Run:
    """Mutable working state of one request."""
    corpus: PackedCorpus
    trace: ExtractionTrace
    started: float
    system_prompt: str = ""
    messages: list[dict] = field(default_factory=list)
    raw: Optional[dict] = None
    last_content: str = ""
    validation_errors: list[str] = field(default_factory=list)
    outcome: Optional[ValidationOutcome] = None
    response: Optional[CognitiveResponse] = None
    auto_corrections: list[AutoCorrection] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    flagged_fields: list[str] = field(default_factory=list)
    report: Optional[CompletenessReport] = None
    re_extraction: Optional[ValidationOutcome] = None
    re_extraction_performed: bool = False
    re_extraction_error: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


# =============================================================================
# Parser
# =============================================================================

class CvParser:
    """
    Orchestrates extraction requests.

    Construct once per process and share; per-request state lives in the
    call to parse(). The feedback store is the only shared mutable
    collaborator and is thread-safe.

    Args:
        llm_client: Object with complete(messages, max_tokens, temperature, timeout)
        feedback_store: Optional few-shot/accuracy store
        config: Application config
        enabled: Feature flag override; None reads CV_LLM_ENABLED
        sleep: Backoff sleep (injectable for tests)
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        llm_client: Any = None,
        feedback_store: Optional[FeedbackStore] = None,
        config: Optional[AppConfig] = None,
        enabled: Optional[bool] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or AppConfig()
        self.llm_client = llm_client
        self.feedback_store = feedback_store
        self.enabled = enabled
        self._sleep = sleep
        self._clock = clock

        parser_cfg = self.config.parser
        self.policy = RetryPolicy(
            max_retries=parser_cfg.max_retries,
            initial_backoff_ms=parser_cfg.initial_backoff_ms,
            max_backoff_ms=parser_cfg.max_backoff_ms,
        )
        self.packer = CorpusPacker(self.config.packer)
        self.validator = ResponseValidator(self.config.validation)
        self.completeness = CompletenessValidator(
            CompletenessPolicy.from_config(self.config.completeness)
        )
        self.weights = ConfidenceWeights.from_config(self.config.confidence)
        self.thresholds = ConfidenceThresholds.from_config(self.config.confidence)

        self._handlers = {
            ParserState.PREFLIGHT: self._preflight,
            ParserState.PROMPT_BUILD: self._build_prompt,
            ParserState.CALL: self._call,
            ParserState.VALIDATE: self._validate,
            ParserState.VALIDATION_RETRY: self._prepare_retry,
            ParserState.COMPLETENESS_CHECK: self._check_completeness,
            ParserState.RE_EXTRACT: self._re_extract,
            ParserState.MERGE: self._merge,
        }

    @classmethod
    def from_config(cls, config: AppConfig, enabled: Optional[bool] = None) -> "CvParser":
        """Build the LLM client and feedback store described by config."""
        feedback_store = None
        if config.parser.enable_feedback_loop:
            feedback_config = config.feedback.model_copy(
                update={
                    "tenant_id": config.parser.tenant_id,
                    "max_examples": config.parser.max_few_shot_examples,
                }
            )
            feedback_store = FeedbackStore(feedback_config)
        return cls(
            llm_client=create_completion_client(config.llm),
            feedback_store=feedback_store,
            config=config,
            enabled=enabled,
        )

    def is_enabled(self) -> bool:
        if self.enabled is not None:
            return self.enabled
        return is_llm_enabled()

    def is_configured(self) -> bool:
        return self.llm_client is not None

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def parse_document(self, document: Union[DocumentRep, dict]) -> ParseResult:
        """Pack a layout document, then parse it."""
        if isinstance(document, dict):
            document = DocumentRep.model_validate(document)
        return self.parse(self.packer.pack(document))

    def parse_text(self, raw_text: str, page_count: int = 1) -> ParseResult:
        """Pack plain text, then parse it."""
        return self.parse(self.packer.pack_raw_text(raw_text, page_count=page_count))

    def parse(self, corpus: PackedCorpus, trace: Optional[ExtractionTrace] = None) -> ParseResult:
        """
        Run one extraction request to a terminal state.

        Returns:
            ParseSuccess or ParseFailure
        """
        run = _Run(corpus=corpus, trace=trace or ExtractionTrace(), started=self._clock())
        state = MachineState()

        while not state.is_terminal:
            event = self._handlers[state.state](run, state)
            next_state = transition(state, event, self.policy)
            run.trace.record_transition(
                state.state.value, event.type.value, next_state.state.value, event.detail
            )
            if next_state.state is ParserState.CALL and next_state.attempt > state.attempt:
                logger.warning(
                    f"Retrying LLM call ({next_state.retries}/{self.policy.max_retries}) "
                    f"after {event.type.value}"
                )
                run.trace.add_decision(LayerDecision(
                    layer_name=state.state.value,
                    decision=DecisionType.RETRY,
                    input_value=event.type.value,
                    output_value=next_state.attempt,
                    evidence=event.detail or "",
                ))
            state = next_state

        if state.state is ParserState.FAILED:
            return self._failure(run, state)
        return self._success(run, state)

    # -------------------------------------------------------------------------
    # State handlers: do the work, report an Event
    # -------------------------------------------------------------------------

    def _preflight(self, run: _Run, state: MachineState) -> Event:
        if not self.is_enabled():
            return Event(EventType.FEATURE_DISABLED)
        if not self.is_configured():
            return Event(EventType.NOT_CONFIGURED)
        return Event(EventType.PREFLIGHT_OK)

    def _build_prompt(self, run: _Run, state: MachineState) -> Event:
        examples_block = ""
        problem_fields: list[str] = []
        accuracies: dict[str, float] = {}

        if self.feedback_store is not None and self.config.parser.enable_feedback_loop:
            context_text = "\n".join(line.text for line in run.corpus.all_lines())
            examples = self.feedback_store.get_relevant_examples(context_text)
            examples_block = self.feedback_store.format_examples_for_prompt(examples)
            try:
                problem_fields = self.feedback_store.get_problematic_fields()
                stats = self.feedback_store.get_field_accuracies()
                accuracies = {name: stats[name].accuracy for name in problem_fields if name in stats}
            except duckdb.Error as e:
                logger.warning(f"Could not load field accuracies: {e}")
                run.trace.add_decision(LayerDecision(
                    layer_name="feedback",
                    decision=DecisionType.FALLBACK,
                    evidence=f"Field accuracies unavailable: {e}",
                ))
            logger.info(
                f"Prompt built with {len(examples)} examples, {len(problem_fields)} problem fields"
            )

        run.system_prompt = build_system_prompt(examples_block)
        user_prompt = build_user_prompt(run.corpus, problem_fields, accuracies)
        run.messages = build_messages(run.system_prompt, user_prompt)
        return Event(EventType.PROMPT_READY)

    def _call(self, run: _Run, state: MachineState) -> Event:
        if state.retries > 0:
            delay = backoff_delay(state.retries, self.policy)
            logger.debug(f"Backing off {delay:.2f}s before attempt {state.attempt}")
            self._sleep(delay)

        messages = run.messages
        if state.corrective:
            messages = messages + [
                {"role": "assistant", "content": run.last_content},
                {"role": "user", "content": build_retry_prompt(run.last_content, run.validation_errors)},
            ]

        parser_cfg = self.config.parser
        try:
            completion = self.llm_client.complete(
                messages,
                max_tokens=parser_cfg.max_output_tokens,
                temperature=parser_cfg.temperature,
                timeout=parser_cfg.timeout_ms / 1000.0,
            )
        except Exception as e:
            kind = classify_llm_error(e)
            logger.warning(f"LLM call failed ({kind.value}): {e}")
            return Event(kind, str(e))

        run.prompt_tokens += completion.prompt_tokens
        run.completion_tokens += completion.completion_tokens
        logger.debug(
            f"LLM call {state.attempt}: {completion.prompt_tokens} prompt / "
            f"{completion.completion_tokens} completion tokens"
        )

        content = (completion.content or "").strip()
        if not content:
            return Event(EventType.EMPTY_RESPONSE, "Empty response from LLM")
        try:
            run.raw = parse_json_content(content)
        except LLMResponseFormatError as e:
            return Event(EventType.INVALID_JSON, str(e))
        run.last_content = content
        return Event(EventType.RESPONSE_RECEIVED)

    def _validate(self, run: _Run, state: MachineState) -> Event:
        outcome = self.validator.validate(run.raw)
        if not outcome.valid:
            run.validation_errors = outcome.errors
            logger.warning(f"Validation failed on attempt {state.attempt}: {len(outcome.errors)} errors")
            return Event(EventType.VALIDATION_FAILED, "; ".join(outcome.errors[:5]))

        run.outcome = outcome
        run.response = outcome.response
        self._absorb(run, outcome, layer="validate")
        return Event(EventType.VALIDATION_PASSED)

    def _prepare_retry(self, run: _Run, state: MachineState) -> Event:
        return Event(EventType.RETRY_READY, f"{len(run.validation_errors)} validation errors")

    def _check_completeness(self, run: _Run, state: MachineState) -> Event:
        report = self.completeness.validate(run.corpus, run.response)
        run.report = report
        logger.info(f"Completeness: {report.completeness_percentage}% ({len(report.missing_line_ids)} missing)")

        if report.is_complete:
            return Event(EventType.COMPLETE)

        parser_cfg = self.config.parser
        if (
            parser_cfg.enable_auto_re_extraction
            and report.missing_lines
            and report.completeness_percentage < parser_cfg.re_extraction_threshold
        ):
            return Event(EventType.NEEDS_RE_EXTRACTION, f"{report.completeness_percentage}%")

        logger.warning(f"Incomplete extraction accepted: {len(report.missing_line_ids)} lines missing")
        return Event(EventType.ACCEPT_INCOMPLETE, f"{report.completeness_percentage}%")

    def _re_extract(self, run: _Run, state: MachineState) -> Event:
        missing = list(run.report.missing_lines)
        logger.info(f"Re-extracting {len(missing)} missing lines")
        messages = build_messages(run.system_prompt, build_re_extraction_user_prompt(missing))

        parser_cfg = self.config.parser
        try:
            completion = self.llm_client.complete(
                messages,
                max_tokens=parser_cfg.re_extraction_max_tokens,
                temperature=parser_cfg.temperature,
                timeout=parser_cfg.timeout_ms / 1000.0,
            )
        except Exception as e:
            return self._re_extraction_failed(run, f"{classify_llm_error(e).value}: {e}")

        run.prompt_tokens += completion.prompt_tokens
        run.completion_tokens += completion.completion_tokens

        content = (completion.content or "").strip()
        if not content:
            return self._re_extraction_failed(run, "Empty response")
        try:
            raw = parse_json_content(content)
        except LLMResponseFormatError as e:
            return self._re_extraction_failed(run, str(e))

        outcome = self.validator.validate(raw, partial=True)
        if not outcome.valid:
            return self._re_extraction_failed(run, "; ".join(outcome.errors[:5]))

        run.re_extraction = outcome
        return Event(EventType.RE_EXTRACTED)

    def _re_extraction_failed(self, run: _Run, reason: str) -> Event:
        logger.warning(f"Re-extraction failed: {reason}")
        run.re_extraction_error = reason
        return Event(EventType.RE_EXTRACT_FAILED, reason)

    def _merge(self, run: _Run, state: MachineState) -> Event:
        outcome = run.re_extraction
        before = len(run.response.evidence_line_ids() | run.response.unmapped_line_ids())
        run.response = merge_responses(run.response, outcome.response)
        after = len(run.response.evidence_line_ids() | run.response.unmapped_line_ids())
        run.re_extraction_performed = True
        self._absorb(run, outcome, layer="re_extract")

        run.trace.add_decision(LayerDecision(
            layer_name="merge",
            decision=DecisionType.MERGE,
            input_value=before,
            output_value=after,
            evidence="Referenced line ids before/after merge",
        ))
        return Event(EventType.MERGED)

    def _absorb(self, run: _Run, outcome: ValidationOutcome, layer: str) -> None:
        """Carry corrections, warnings and flags from a validation pass into the run."""
        run.auto_corrections.extend(outcome.auto_corrections)
        for warning in outcome.warnings:
            if warning not in run.warnings:
                run.warnings.append(warning)
        for name in outcome.flagged_fields:
            if name not in run.flagged_fields:
                run.flagged_fields.append(name)

        for correction in outcome.auto_corrections:
            run.trace.add_decision(LayerDecision(
                layer_name=layer,
                field_name=correction.field,
                decision=DecisionType.REJECT if correction.corrected is None else DecisionType.MODIFY,
                input_value=correction.original,
                output_value=correction.corrected,
                evidence=correction.reason,
            ))
        for name in outcome.flagged_fields:
            run.trace.add_decision(LayerDecision(
                layer_name=layer, field_name=name, decision=DecisionType.FLAG,
            ))

    # -------------------------------------------------------------------------
    # Terminal results
    # -------------------------------------------------------------------------

    def _latency_ms(self, run: _Run) -> int:
        return int(round((self._clock() - run.started) * 1000))

    def _success(self, run: _Run, state: MachineState) -> ParseSuccess:
        response = run.response
        report = run.report

        warnings = list(response.metadata.warnings)
        for warning in run.warnings:
            if warning not in warnings:
                warnings.append(warning)
        warnings.extend(f"Auto-corrected {c.field}: {c.reason}" for c in run.auto_corrections)
        if not report.is_complete:
            warnings.append(f"{len(report.missing_line_ids)} lines were not processed")
        if report.token_limit_reached:
            warnings.append(TOKEN_LIMIT_WARNING)
            logger.warning("Token limit nearly reached - input may have been truncated")
        if run.re_extraction_error:
            warnings.append(f"Automatic re-extraction failed: {run.re_extraction_error}")

        confidence = score_response_fields(
            run.corpus, response, run.flagged_fields, self.weights, self.thresholds
        )

        run.trace.mark_complete("success")
        result = ParseSuccess(
            response=response,
            completeness=report,
            auto_corrections=list(run.auto_corrections),
            warnings=warnings,
            flagged_fields=list(run.flagged_fields),
            confidence=confidence,
            prompt_tokens=run.prompt_tokens,
            completion_tokens=run.completion_tokens,
            latency_ms=self._latency_ms(run),
            retry_count=state.retries,
            re_extraction_performed=run.re_extraction_performed,
            dialect=run.outcome.dialect,
            trace=run.trace,
        )
        logger.info(
            f"Extraction successful: {len(response.unmapped_segments)} unmapped segments, "
            f"{len(run.auto_corrections)} auto-corrections, complete={report.is_complete}, "
            f"re-extraction={run.re_extraction_performed}, retries={state.retries}"
        )
        return result

    def _failure(self, run: _Run, state: MachineState) -> ParseFailure:
        code = state.error_code
        message = ERROR_MESSAGES[code]
        if state.error_detail and code not in (ErrorCode.LLM_DISABLED, ErrorCode.LLM_NOT_CONFIGURED):
            message = f"{message}: {state.error_detail}"
        validation_errors = list(run.validation_errors) if code is ErrorCode.VALIDATION_FAILED else []

        run.trace.mark_complete(code.value)
        logger.error(f"Extraction failed [{code.value}] after {state.retries} retries: {message}")
        return ParseFailure(
            error=message,
            error_code=code,
            validation_errors=validation_errors,
            latency_ms=self._latency_ms(run),
            retry_count=state.retries,
            trace=run.trace,
        )
