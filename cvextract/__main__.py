"""
CLI interface for CV extraction.

Usage:
    python -m cvextract pack --layout data/layout.json --output corpus.json
    python -m cvextract parse --layout data/layout.json --config configs/base.yaml
    python -m cvextract parse --text data/cv.txt --output result.json --trace-dir data/traces
    python -m cvextract audit --corpus corpus.json --response response.json
    python -m cvextract feedback stats --config configs/base.yaml
    python -m cvextract feedback examples --context "Staatsangehörigkeit: Schweiz"
    python -m cvextract config-check --config configs/base.yaml
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from .config import AppConfig, load_config, validate_config

logger = logging.getLogger(__name__)


def _load_app_config(path) -> AppConfig:
    if path:
        return load_config(path)
    return AppConfig()


def _read_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _emit(payload: dict, output: str = None):
    """Print JSON or write it to a file."""
    text = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
    if output:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text, encoding="utf-8")
        print(f"Saved to: {output_path}")
    else:
        print(text)


def cmd_pack(args):
    """Pack a layout document into the line corpus."""
    from .parse import CorpusPacker, DocumentRep

    config = _load_app_config(args.config)
    document = DocumentRep.model_validate(_read_json(args.layout))
    corpus = CorpusPacker(config.packer).pack(document)

    print(f"Packed {len(corpus.all_lines())} lines, ~{corpus.estimated_tokens} tokens "
          f"({corpus.truncated_lines_count} truncated)", file=sys.stderr)
    _emit(corpus.model_dump(by_alias=True), args.output)


def cmd_parse(args):
    """Run the extraction orchestrator on one document."""
    from .extract import CvParser

    config = _load_app_config(args.config)
    for warning in validate_config(config):
        logger.warning(f"Config warning: {warning}")

    parser = CvParser.from_config(config, enabled=True if args.force_enable else None)

    if args.layout:
        result = parser.parse_document(_read_json(args.layout))
    else:
        text = Path(args.text).read_text(encoding="utf-8")
        result = parser.parse_text(text)

    if args.trace_dir and result.trace is not None:
        result.trace.save(args.trace_dir)

    print(f"\n{'='*60}", file=sys.stderr)
    if result.success:
        print(f"EXTRACTION COMPLETE ({result.completeness.completeness_percentage}% complete)",
              file=sys.stderr)
        print(f"{'='*60}", file=sys.stderr)
        print(f"Retries: {result.retry_count}  Latency: {result.latency_ms}ms  "
              f"Tokens: {result.prompt_tokens}+{result.completion_tokens}", file=sys.stderr)
        for warning in result.warnings:
            print(f"  - {warning}", file=sys.stderr)
    else:
        print(f"EXTRACTION FAILED [{result.error_code.value}]", file=sys.stderr)
        print(f"{'='*60}", file=sys.stderr)
        print(result.error, file=sys.stderr)
        for error in result.validation_errors:
            print(f"  - {error}", file=sys.stderr)

    _emit(result.to_dict(), args.output)
    if not result.success:
        sys.exit(1)


def cmd_audit(args):
    """Reconcile a saved response against its corpus."""
    from .extract import CompletenessPolicy, CompletenessValidator, ResponseValidator
    from .parse import PackedCorpus

    config = _load_app_config(args.config)
    corpus = PackedCorpus.model_validate(_read_json(args.corpus))

    outcome = ResponseValidator(config.validation).validate(_read_json(args.response))
    if not outcome.valid:
        print("Response failed validation:")
        for error in outcome.errors:
            print(f"  - {error}")
        sys.exit(2)

    validator = CompletenessValidator(CompletenessPolicy.from_config(config.completeness))
    report = validator.validate(corpus, outcome.response)
    print(report.summary)

    if report.missing_lines:
        print("\nMissing lines:")
        for line in report.missing_lines:
            print(f'  [{line.line_id}] (page {line.page}): "{line.text}" - {line.possible_reason}')

    if args.output:
        _emit(report.to_dict(), args.output)
    if not report.is_complete:
        sys.exit(1)


def cmd_feedback(args):
    """Inspect the feedback store."""
    from .extract import FeedbackStore

    config = _load_app_config(args.config)
    with FeedbackStore(config.feedback) as store:
        if args.action == "stats":
            _emit(store.stats())
            df = store.field_metrics_frame()
            if not df.empty:
                print(df.to_string(index=False))
        elif args.action == "problematic":
            fields = store.get_problematic_fields()
            if not fields:
                print("No problematic fields")
            for name in fields:
                print(name)
        elif args.action == "examples":
            examples = store.get_relevant_examples(args.context or "")
            print(store.format_examples_for_prompt(examples))


def cmd_config_check(args):
    """Validate a config file and print its hash."""
    config = load_config(args.config)
    warnings = validate_config(config)

    print(f"Config: {args.config}")
    print(f"Config hash: {config.config_hash()}")
    print(f"LLM provider: {config.llm.provider} (configured: {config.llm.resolved().is_configured()})")
    if warnings:
        print(f"\n{len(warnings)} warnings:")
        for warning in warnings:
            print(f"  - {warning}")
        sys.exit(1)
    print("No issues found")


def main():
    """Main CLI entrypoint."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(
        description="CV extraction with completeness guarantee",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Pack command
    pack_parser = subparsers.add_parser("pack", help="Build the packed line corpus")
    pack_parser.add_argument("--layout", required=True, help="Layout document JSON")
    pack_parser.add_argument("--config", help="Path to config file")
    pack_parser.add_argument("--output", help="Write corpus JSON here instead of stdout")

    # Parse command
    parse_parser = subparsers.add_parser("parse", help="Extract structured data from a CV")
    source = parse_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--layout", help="Layout document JSON")
    source.add_argument("--text", help="Plain text CV")
    parse_parser.add_argument("--config", help="Path to config file")
    parse_parser.add_argument("--output", help="Write result JSON here instead of stdout")
    parse_parser.add_argument("--trace-dir", help="Save the decision trace to this directory")
    parse_parser.add_argument(
        "--force-enable",
        action="store_true",
        help="Ignore CV_LLM_ENABLED and run the extraction",
    )

    # Audit command
    audit_parser = subparsers.add_parser("audit", help="Completeness report for a saved response")
    audit_parser.add_argument("--corpus", required=True, help="Packed corpus JSON")
    audit_parser.add_argument("--response", required=True, help="Cognitive response JSON")
    audit_parser.add_argument("--config", help="Path to config file")
    audit_parser.add_argument("--output", help="Write report JSON here")

    # Feedback command
    feedback_parser = subparsers.add_parser("feedback", help="Inspect the feedback store")
    feedback_parser.add_argument("action", choices=["stats", "problematic", "examples"])
    feedback_parser.add_argument("--config", help="Path to config file")
    feedback_parser.add_argument("--context", help="Document text for example selection")

    # Config check command
    check_parser = subparsers.add_parser("config-check", help="Validate a config file")
    check_parser.add_argument("--config", required=True, help="Path to config file")

    args = parser.parse_args()

    if args.command == "pack":
        cmd_pack(args)
    elif args.command == "parse":
        cmd_parse(args)
    elif args.command == "audit":
        cmd_audit(args)
    elif args.command == "feedback":
        cmd_feedback(args)
    elif args.command == "config-check":
        cmd_config_check(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
