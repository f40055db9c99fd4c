"""
Tests for the few-shot examples module.

Tests cover:
1. FewShotExample dataclass
2. Built-in examples
3. YAML persistence
4. Prompt formatting with examples
5. Integration with prompts.py
"""

from pathlib import Path

from cvextract.extract.examples import (
    BUILTIN_EXAMPLES,
    CONTEXT_PREVIEW_CHARS,
    FewShotExample,
    format_examples_for_prompt,
    load_examples_from_yaml,
    save_examples_to_yaml,
)
from cvextract.extract.prompts import SYSTEM_PROMPT, build_system_prompt


class TestFewShotExample:
    """Tests for FewShotExample dataclass."""

    def test_creation(self):
        """Test basic example creation."""
        example = FewShotExample(
            context="Nationalität: Schweiz",
            wrong="nationality=null",
            correct="Swiss",
            field="nationality",
            explanation="Direct label",
        )
        assert example.field == "nationality"
        assert example.source == "builtin"

    def test_to_dict(self):
        """Test serialization to dictionary."""
        d = BUILTIN_EXAMPLES[0].to_dict()
        assert set(d) == {"context", "wrong", "correct", "field", "explanation", "source"}


class TestBuiltinExamples:
    """Tests for the built-in example set."""

    def test_never_empty(self):
        assert len(BUILTIN_EXAMPLES) >= 5

    def test_cover_names_and_nationality(self):
        fields = {ex.field for ex in BUILTIN_EXAMPLES}
        assert {"firstName", "nationality"} <= fields

    def test_job_title_example_first(self):
        """The job-title-as-name pattern is the most valuable one."""
        assert "JOB TITLE" in BUILTIN_EXAMPLES[0].explanation


class TestYamlPersistence:
    """Tests for YAML load/save."""

    def test_save_and_load(self, tmp_path):
        """Saved examples load back with source 'yaml'."""
        path = save_examples_to_yaml(BUILTIN_EXAMPLES[:2], tmp_path / "sub" / "examples.yaml")
        assert isinstance(path, Path)
        assert path.exists()

        loaded = load_examples_from_yaml(path)
        assert [ex.correct for ex in loaded] == [ex.correct for ex in BUILTIN_EXAMPLES[:2]]
        assert all(ex.source == "yaml" for ex in loaded)

    def test_unicode_preserved(self, tmp_path):
        path = save_examples_to_yaml(BUILTIN_EXAMPLES[2:3], tmp_path / "examples.yaml")
        assert "Staatsangehörigkeit" in path.read_text(encoding="utf-8")

    def test_defaults_for_optional_keys(self, tmp_path):
        """wrong and explanation are optional in hand-written files."""
        path = tmp_path / "examples.yaml"
        path.write_text(
            "examples:\n  - context: 'Wohnort: Bern'\n    correct: Bern\n    field: city\n",
            encoding="utf-8",
        )
        loaded = load_examples_from_yaml(path)
        assert loaded[0].wrong == "null/missing"
        assert loaded[0].explanation == "User corrected this mapping"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_examples_from_yaml(path) == []


class TestPromptFormatting:
    """Tests for format_examples_for_prompt."""

    def test_empty(self):
        assert format_examples_for_prompt([]) == ""

    def test_numbered_corrections(self):
        block = format_examples_for_prompt(BUILTIN_EXAMPLES[:2])
        assert "LEARNING FROM PAST CORRECTIONS" in block
        assert "CORRECTION #1" in block
        assert "CORRECTION #2" in block
        assert 'Correct: nationality="Turkish"' in block

    def test_long_context_truncated(self):
        example = FewShotExample(
            context="x" * (CONTEXT_PREVIEW_CHARS + 10),
            wrong="a",
            correct="b",
            field="skills",
            explanation="c",
        )
        block = format_examples_for_prompt([example])
        assert f'Context: "{"x" * CONTEXT_PREVIEW_CHARS}..."' in block

    def test_system_prompt_integration(self):
        block = format_examples_for_prompt(BUILTIN_EXAMPLES[:1])
        assert build_system_prompt(block).startswith(SYSTEM_PROMPT)
        assert build_system_prompt(block).endswith(block)
        assert build_system_prompt("") == SYSTEM_PROMPT
