"""
CV extraction core.

This package provides tools for extracting structured CV data with an LLM:
- Packing document-layout output into a line-identified corpus
- Validating and correcting the model's cognitive response
- Scoring field confidence
- Auditing completeness against the corpus
- Learning from human corrections via few-shot examples
"""

__version__ = "0.1.0"
