"""
Few-shot example library for CV extraction.

This module provides:
- The FewShotExample shape injected into extraction prompts
- Built-in high-value examples that are always available
- Example loading/saving from YAML files for easy editing
- Formatting for prompt construction

Examples come from:
1. BUILTIN_EXAMPLES in this file (the floor, never empty)
2. YAML files (extra built-ins per deployment)
3. Stored human corrections (see feedback.FeedbackStore)

Usage:
    from cvextract.extract.examples import BUILTIN_EXAMPLES, format_examples_for_prompt

    prompt_block = format_examples_for_prompt(BUILTIN_EXAMPLES[:3])
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Union

import yaml

logger = logging.getLogger(__name__)

CONTEXT_PREVIEW_CHARS = 60


@dataclass
class FewShotExample:
    """
    A past correction replayed as in-context guidance.

    Attributes:
        context: CV text where the pattern appears
        wrong: What the model extracted (or "null/missing")
        correct: The corrected value
        field: Target field name (firstName, nationality, ...)
        explanation: Why, phrased for the model
        source: "builtin", "yaml" or "stored"
    """
    context: str
    wrong: str
    correct: str
    field: str
    explanation: str
    source: str = "builtin"

    def to_dict(self) -> dict:
        return asdict(self)


BUILTIN_EXAMPLES = [
    FewShotExample(
        context="Senior Software Engineer\nMax Müller\nmax.mueller@example.com",
        wrong="firstName='Senior', lastName='Software Engineer'",
        correct="Max",
        field="firstName",
        explanation=(
            "'Senior Software Engineer' is a JOB TITLE, not a name. The actual name "
            "'Max Müller' appears on the next line. Split as firstName='Max', lastName='Müller'."
        ),
    ),
    FewShotExample(
        context="Ethnicity: Turkish\nLanguages: German (native), Turkish (fluent)",
        wrong="nationality=null (field not found)",
        correct="Turkish",
        field="nationality",
        explanation=(
            "IMPLICIT MAPPING: 'Ethnicity: Turkish' strongly implies Turkish nationality. "
            "When you see Ethnicity, map the value to nationality."
        ),
    ),
    FewShotExample(
        context="Staatsangehörigkeit: Deutsch\nGeburtsdatum: 15.03.1990",
        wrong="nationality=null",
        correct="German",
        field="nationality",
        explanation="'Staatsangehörigkeit' is German for 'nationality'. This is a direct translation mapping.",
    ),
    FewShotExample(
        context="Herkunft: Italien\nWohnort: Zürich, Schweiz",
        wrong="nationality=null",
        correct="Italian",
        field="nationality",
        explanation="'Herkunft' (origin) from Italy implies Italian nationality. This is an implicit mapping.",
    ),
    FewShotExample(
        context="Name: Ali Yilmaz\nBeruf: DevOps Engineer\nEmail: ali@example.com",
        wrong="firstName='Ali Yilmaz'",
        correct="Ali",
        field="firstName",
        explanation=(
            "Full name must be split. 'Ali' is the first name (given name), "
            "'Yilmaz' is the last name (family name)."
        ),
    ),
]


def load_examples_from_yaml(path: Union[str, Path]) -> list[FewShotExample]:
    """
    Load examples from a YAML file.

    Expected format:
        examples:
          - context: "..."
            wrong: "..."
            correct: "..."
            field: firstName
            explanation: "..."
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    examples = []
    for item in data.get("examples", []):
        examples.append(
            FewShotExample(
                context=item["context"],
                wrong=item.get("wrong", "null/missing"),
                correct=item["correct"],
                field=item["field"],
                explanation=item.get("explanation", "User corrected this mapping"),
                source="yaml",
            )
        )
    logger.info(f"Loaded {len(examples)} examples from {path}")
    return examples


def save_examples_to_yaml(examples: list[FewShotExample], path: Union[str, Path]) -> Path:
    """Save examples to a YAML file (source is not written)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "examples": [
            {k: v for k, v in ex.to_dict().items() if k != "source"}
            for ex in examples
        ]
    }
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
    return path


def format_examples_for_prompt(examples: list[FewShotExample]) -> str:
    """Render examples as the correction block of the system prompt."""
    if not examples:
        return ""

    rule = "=" * 79
    lines = [
        rule,
        "LEARNING FROM PAST CORRECTIONS - APPLY THESE PATTERNS!",
        rule,
        "",
        "The following corrections were made by users. You MUST apply these patterns:",
        "",
    ]

    for i, ex in enumerate(examples, 1):
        context = ex.context[:CONTEXT_PREVIEW_CHARS]
        if len(ex.context) > CONTEXT_PREVIEW_CHARS:
            context += "..."
        lines.extend([
            f"CORRECTION #{i}",
            f'  Context: "{context}"',
            f"  Wrong: {ex.wrong}",
            f'  Correct: {ex.field}="{ex.correct}"',
            f"  Reason: {ex.explanation}",
            "",
        ])

    return "\n".join(lines)
