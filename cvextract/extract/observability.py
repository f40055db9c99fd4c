"""
Decision tracing for CV extraction requests.

Every state transition, auto-correction, retry and re-extraction of one
request is appended to an ExtractionTrace so that a finished (or failed)
extraction can be explained after the fact.

Usage:
    trace = ExtractionTrace(request_id="cv-123")
    trace.add_decision(LayerDecision(
        layer_name="validate",
        field_name="email",
        decision=DecisionType.REJECT,
        input_value="not-an-email",
        output_value=None,
        evidence="Invalid email format",
    ))
    print(trace.explain())
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


class DecisionType(str, Enum):
    """Type of decision taken while processing a request."""
    TRANSITION = "transition"  # State machine moved
    EXTRACT = "extract"        # Model produced values
    MODIFY = "modify"          # Value auto-corrected
    REJECT = "reject"          # Value or entry removed
    FLAG = "flag"              # Value kept but needs review
    RETRY = "retry"            # Another LLM call scheduled
    MERGE = "merge"            # Re-extraction merged in
    FALLBACK = "fallback"      # Degraded path taken (e.g. built-in examples)
    FAIL = "fail"              # Terminal failure


@dataclass
class LayerDecision:
    """Single decision from one processing stage."""
    layer_name: str              # state or component name: "call", "validate", "feedback"
    decision: DecisionType
    field_name: Optional[str] = None
    input_value: Any = None
    output_value: Any = None
    evidence: str = ""           # Why this decision was made
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "layer_name": self.layer_name,
            "field_name": self.field_name,
            "decision": self.decision.value,
            "input_value": _serialize_value(self.input_value),
            "output_value": _serialize_value(self.output_value),
            "evidence": self.evidence,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ExtractionTrace:
    """Ordered decision log for one extraction request."""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    decisions: list[LayerDecision] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    outcome: Optional[str] = None

    def add_decision(self, decision: LayerDecision) -> None:
        self.decisions.append(decision)

    def record_transition(self, from_state: str, event: str, to_state: str, detail: Optional[str] = None):
        """Log a state machine step."""
        decision = DecisionType.FAIL if to_state == "failed" else DecisionType.TRANSITION
        self.add_decision(LayerDecision(
            layer_name=from_state,
            decision=decision,
            input_value=event,
            output_value=to_state,
            evidence=detail or "",
        ))

    def mark_complete(self, outcome: str) -> None:
        self.completed_at = datetime.now()
        self.outcome = outcome

    def decisions_of(self, decision_type: DecisionType) -> list[LayerDecision]:
        return [d for d in self.decisions if d.decision == decision_type]

    @property
    def path(self) -> list[str]:
        """States visited, in order."""
        steps = [d for d in self.decisions if d.decision in (DecisionType.TRANSITION, DecisionType.FAIL)]
        if not steps:
            return []
        return [steps[0].layer_name] + [str(d.output_value) for d in steps]

    def summarize(self) -> dict:
        """High-level summary for logging."""
        by_type: dict[str, int] = {}
        for d in self.decisions:
            by_type[d.decision.value] = by_type.get(d.decision.value, 0) + 1
        return {
            "request_id": self.request_id,
            "outcome": self.outcome,
            "decision_count": len(self.decisions),
            "by_type": by_type,
            "path": self.path,
            "duration_seconds": (
                (self.completed_at - self.started_at).total_seconds()
                if self.completed_at else None
            ),
        }

    def explain(self) -> str:
        """
        Human-readable audit of the request.

        Returns:
            Multi-line string, one block per decision
        """
        lines = [f"{'=' * 50}"]
        lines.append(f"Request: {self.request_id}")
        lines.append(f"{'=' * 50}")
        lines.append(f"Outcome: {self.outcome or 'in progress'}")
        lines.append(f"Path: {' -> '.join(self.path) or 'N/A'}")
        lines.append("")
        lines.append("Decision trace:")
        lines.append("-" * 50)

        for i, d in enumerate(self.decisions, 1):
            target = f" [{d.field_name}]" if d.field_name else ""
            lines.append(f"  [{i}] {d.layer_name}{target} -> {d.decision.value}")
            if d.input_value is not None or d.output_value is not None:
                lines.append(f"      Input:  {_format_value(d.input_value)}")
                lines.append(f"      Output: {_format_value(d.output_value)}")
            if d.evidence:
                lines.append(f"      Why: {_format_value(d.evidence, 120)}")
            for key, val in d.metadata.items():
                lines.append(f"      {key}: {val}")

        return "\n".join(lines)

    def to_dict(self) -> dict:
        """Export full trace to dictionary."""
        return {
            "request_id": self.request_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "summary": self.summarize(),
            "decisions": [d.to_dict() for d in self.decisions],
        }

    def save(self, output_dir: Union[str, Path]) -> Path:
        """Save trace to {output_dir}/{request_id}_trace.json."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        output_path = output_dir / f"{self.request_id}_trace.json"
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

        logger.info(f"Saved extraction trace to {output_path}")
        return output_path


# =============================================================================
# Utility Functions
# =============================================================================

def _serialize_value(value: Any) -> Any:
    """Serialize a value for JSON output."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, mode="json")
    return str(value)


def _format_value(value: Any, max_length: int = 80) -> str:
    """Format a value for display."""
    if value is None:
        return "None"
    s = str(value.value) if isinstance(value, Enum) else str(value)
    if len(s) > max_length:
        return s[:max_length - 3] + "..."
    return s
