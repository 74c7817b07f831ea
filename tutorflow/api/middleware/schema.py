"""
Response Schema & Safe Default
==============================

Pydantic models for the model's claimed output (``StructuredAnswer``) and
for the object every pipeline exit returns (``RequiredResponseStructure``).

Guarantees:
- ``validate_response_structure`` either returns a fully valid object or
  raises ``SchemaInvalidError``; nothing partially valid gets through
- ``build_safe_default`` is deterministic: the same reason always yields
  an equal object
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from tutorflow.core.exceptions import SchemaInvalidError

# ── Base ─────────────────────────────────────────────────────────────────────

class _Model(BaseModel):
    """camelCase on the wire, snake_case in Python, immutable once built."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

# ── Structured Answer (model output) ─────────────────────────────────────────

class CodeBlock(_Model):
    language: str = ""
    content: str = ""
    caption: str | None = None

class AnswerSection(_Model):
    heading: str = ""
    body: str = ""
    code: list[CodeBlock] = Field(default_factory=list)

class Reference(_Model):
    label: str = ""
    url: str = ""

class StructuredAnswer(_Model):
    """What the model claims to have produced. Not yet guaranteed renderable."""

    title: str = Field(min_length=1)
    tldr: str = Field(default="", validation_alias=AliasChoices("tldr", "summary", "TLDR"))
    sections: list[AnswerSection] = Field(default_factory=list)
    references: list[Reference] = Field(default_factory=list)

# ── Required Response Structure (pipeline output) ────────────────────────────

class HeaderInfo(_Model):
    text: str
    level: int = Field(ge=1, le=6)
    has_emoji: bool = False

class SectionInfo(_Model):
    title: str
    word_count: int = Field(ge=0)
    has_subsections: bool = False

class ListInfo(_Model):
    type: Literal["ordered", "unordered"]
    item_count: int = Field(ge=1)
    nested: bool = False

class TableInfo(_Model):
    row_count: int = Field(ge=1)
    column_count: int = Field(ge=0)
    is_valid: bool = True

class CodeBlockInfo(_Model):
    language: str = ""
    is_valid: bool = True

class ContentStructure(_Model):
    headers: list[HeaderInfo] = Field(default_factory=list)
    sections: list[SectionInfo] = Field(default_factory=list)
    lists: list[ListInfo] = Field(default_factory=list)
    tables: list[TableInfo] = Field(default_factory=list)
    code_blocks: list[CodeBlockInfo] = Field(default_factory=list)

class ResponseMetadata(_Model):
    response_type: str = "explanation"
    difficulty: str | None = None
    estimated_read_time: int = Field(default=0, ge=0)

class FormattedResponse(_Model):
    content: str = Field(min_length=1)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)
    structure: ContentStructure = Field(default_factory=ContentStructure)

class QualityBreakdown(_Model):
    structure: int = Field(default=0, ge=0, le=100)
    consistency: int = Field(default=0, ge=0, le=100)
    formatting: int = Field(default=0, ge=0, le=100)
    completeness: int = Field(default=0, ge=0, le=100)
    educational: int = Field(default=0, ge=0, le=100)

class QualityAssessment(_Model):
    overall_score: int = Field(default=0, ge=0, le=100)
    breakdown: QualityBreakdown = Field(default_factory=QualityBreakdown)
    recommendations: list[str] = Field(default_factory=list)

class ProcessingMetadata(_Model):
    processing_time: float = Field(default=0.0, ge=0)
    steps_completed: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    optimizations: list[str] = Field(default_factory=list)

class ValidationResult(_Model):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

class RequiredResponseStructure(_Model):
    """The one shape every pipeline exit returns."""

    formatted_response: FormattedResponse
    quality_assessment: QualityAssessment
    processing_metadata: ProcessingMetadata
    validation_result: ValidationResult | None = None

# ── Validation ───────────────────────────────────────────────────────────────

def _format_errors(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]

def validate_response_structure(
    candidate: RequiredResponseStructure | dict[str, Any],
) -> RequiredResponseStructure:
    """Re-validate a candidate from scratch; raise SchemaInvalidError on any defect."""
    data = (
        candidate.model_dump(by_alias=True)
        if isinstance(candidate, RequiredResponseStructure)
        else candidate
    )
    try:
        return RequiredResponseStructure.model_validate(data)
    except ValidationError as exc:
        errors = _format_errors(exc)
        raise SchemaInvalidError(
            f"Response structure failed validation ({len(errors)} errors)", errors
        ) from exc

TITLE_MAX_CHARS = 100
TLDR_MAX_CHARS = 300

def validate_structured_answer(answer: StructuredAnswer) -> ValidationResult:
    """Content checks beyond the schema: renderability errors and style warnings."""
    errors: list[str] = []
    warnings: list[str] = []

    if not answer.title.strip():
        errors.append("Title is required")
    elif len(answer.title) > TITLE_MAX_CHARS:
        warnings.append(f"Title exceeds {TITLE_MAX_CHARS} characters")

    if not answer.tldr.strip():
        warnings.append("Summary (TL;DR) is missing")
    elif len(answer.tldr) > TLDR_MAX_CHARS:
        warnings.append(f"Summary exceeds {TLDR_MAX_CHARS} characters")

    renderable = 0
    for idx, section in enumerate(answer.sections, start=1):
        if not section.heading.strip() or not section.body.strip():
            warnings.append(f"Section {idx} is missing a heading or body and was skipped")
            continue
        renderable += 1
        for block in section.code:
            if not block.content.strip():
                warnings.append(f"Section {idx} has an empty code block")

    if renderable == 0:
        errors.append("At least one section with a heading and body is required")

    for idx, ref in enumerate(answer.references, start=1):
        if not ref.label.strip() or not ref.url.strip():
            warnings.append(f"Reference {idx} is missing a label or URL")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

# ── Safe Default ─────────────────────────────────────────────────────────────

SAFE_DEFAULT_CONTENT = "No content available"

class SafeDefaultReason(StrEnum):
    MALFORMED_OUTPUT = "malformed_output"
    SCHEMA_INVALID = "schema_invalid"
    INTERNAL_ERROR = "internal_error"

_SAFE_DEFAULT_WARNINGS: dict[SafeDefaultReason, str] = {
    SafeDefaultReason.MALFORMED_OUTPUT: (
        "Model output could not be parsed as JSON; returned safe default"
    ),
    SafeDefaultReason.SCHEMA_INVALID: (
        "Model output failed schema validation; returned safe default"
    ),
    SafeDefaultReason.INTERNAL_ERROR: (
        "Response post-processing failed; returned safe default"
    ),
}

def build_safe_default(
    reason: SafeDefaultReason = SafeDefaultReason.SCHEMA_INVALID,
    response_type: str = "explanation",
) -> RequiredResponseStructure:
    """Canonical placeholder: no content, zeroed quality, one explicit warning."""
    return RequiredResponseStructure(
        formatted_response=FormattedResponse(
            content=SAFE_DEFAULT_CONTENT,
            metadata=ResponseMetadata(response_type=response_type, estimated_read_time=0),
            structure=ContentStructure(),
        ),
        quality_assessment=QualityAssessment(
            overall_score=0,
            breakdown=QualityBreakdown(),
            recommendations=[],
        ),
        processing_metadata=ProcessingMetadata(
            processing_time=0.0,
            steps_completed=[],
            warnings=[_SAFE_DEFAULT_WARNINGS[reason]],
            optimizations=[],
        ),
        validation_result=ValidationResult(
            is_valid=False,
            errors=[reason.value],
            warnings=[],
        ),
    )

def is_safe_default(structure: RequiredResponseStructure) -> bool:
    return (
        structure.formatted_response.content == SAFE_DEFAULT_CONTENT
        and structure.quality_assessment.overall_score == 0
    )
