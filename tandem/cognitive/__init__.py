"""Cognitive layer: pattern-based interpretation of Director turns."""

from tandem.cognitive.directive import (
    Directive,
    DirectiveKind,
    OperatorInput,
    WorkerRequest,
    extract_model_hint,
    is_finished,
    parse_directive,
    parse_operator_input,
)

__all__ = [
    "Directive",
    "DirectiveKind",
    "OperatorInput",
    "WorkerRequest",
    "extract_model_hint",
    "is_finished",
    "parse_directive",
    "parse_operator_input",
]
