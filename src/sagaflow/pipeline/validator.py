"""Pipeline validation.

Statically checks a :class:`Pipeline` for problems that would make a
run ambiguous or pointless, without executing any step.
"""

from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sagaflow.errors import SagaflowError

if TYPE_CHECKING:
    from sagaflow.pipeline.builder import Pipeline


class ValidationLevel(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationFinding:
    """A single validation finding."""

    level: ValidationLevel
    message: str
    step_name: str | None = None
    rule: str = ""
    fix: str | None = None

    def __str__(self) -> str:
        location = f" (step '{self.step_name}')" if self.step_name is not None else ""
        rule_tag = f" [{self.rule}]" if self.rule else ""
        return f"[{self.level.value.upper()}]{location}{rule_tag} {self.message}"


@runtime_checkable
class LintRule(Protocol):
    """Protocol for custom validation rules."""

    name: str

    def check(self, pipeline: Pipeline) -> list[ValidationFinding]: ...


_custom_rules: list[LintRule] = []


def register_lint_rule(rule: LintRule) -> None:
    """Register a custom lint rule to run during validation."""
    _custom_rules.append(rule)


def unregister_lint_rule(rule: LintRule) -> None:
    if rule in _custom_rules:
        _custom_rules.remove(rule)


def validate_pipeline(
    pipeline: Pipeline,
    extra_rules: list[LintRule] | None = None,
) -> list[ValidationFinding]:
    """Run all validation checks on *pipeline*.

    Args:
        pipeline: The pipeline to validate.
        extra_rules: Additional lint rules to run.

    Returns:
        A list of :class:`ValidationFinding` objects, possibly empty.
    """
    findings: list[ValidationFinding] = []

    _check_empty_names(pipeline, findings)
    _check_duplicate_steps(pipeline, findings)
    _check_duplicate_cleanups(pipeline, findings)
    _check_halted(pipeline, findings)
    _check_has_steps(pipeline, findings)

    for rule in [*_custom_rules, *(extra_rules or [])]:
        findings.extend(rule.check(pipeline))

    return findings


def has_errors(findings: list[ValidationFinding]) -> bool:
    """Return True if any finding is an error (not just a warning)."""
    return any(f.level == ValidationLevel.ERROR for f in findings)


class ValidationException(SagaflowError):
    """Raised by :func:`validate_or_raise` when ERROR-level findings exist."""

    def __init__(self, errors: list[ValidationFinding]) -> None:
        self.errors = errors
        super().__init__("\n".join(str(e) for e in errors))


def validate_or_raise(
    pipeline: Pipeline,
    extra_rules: list[LintRule] | None = None,
) -> list[ValidationFinding]:
    """Run validation and raise on any ERROR-level finding.

    Returns:
        The full list of findings (only warnings/info if no exception).

    Raises:
        ValidationException: If any ERROR-level findings are found.
    """
    findings = validate_pipeline(pipeline, extra_rules=extra_rules)
    errors = [f for f in findings if f.level == ValidationLevel.ERROR]
    if errors:
        raise ValidationException(errors)
    return findings


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_empty_names(pipeline: Pipeline, findings: list[ValidationFinding]) -> None:
    for index, step in enumerate(pipeline.steps):
        if not step.name.strip():
            findings.append(
                ValidationFinding(
                    level=ValidationLevel.ERROR,
                    message=f"Step at position {index} has an empty name",
                    rule="empty_step_name",
                    fix="Give every step a descriptive name",
                )
            )


def _check_duplicate_steps(
    pipeline: Pipeline, findings: list[ValidationFinding]
) -> None:
    names = [*pipeline.completed_steps(), *pipeline.pending_steps()]
    for name, count in Counter(names).items():
        if count > 1 and name.strip():
            findings.append(
                ValidationFinding(
                    level=ValidationLevel.WARNING,
                    message=f"Step name used {count} times; completed_steps is ambiguous",
                    step_name=name,
                    rule="duplicate_step_name",
                    fix="Rename one of the steps",
                )
            )


def _check_duplicate_cleanups(
    pipeline: Pipeline, findings: list[ValidationFinding]
) -> None:
    counts = Counter(c.name for c in pipeline.cleanups)
    for name, count in counts.items():
        if count > 1:
            findings.append(
                ValidationFinding(
                    level=ValidationLevel.WARNING,
                    message=f"Cleanup '{name}' is registered {count} times and will run {count} times",
                    rule="duplicate_cleanup_name",
                )
            )


def _check_halted(pipeline: Pipeline, findings: list[ValidationFinding]) -> None:
    if pipeline.halted:
        findings.append(
            ValidationFinding(
                level=ValidationLevel.WARNING,
                message=f"Pipeline is halted ({pipeline.error!r}); pending steps will never run",
                rule="halted",
                fix="Call rollback_to() with a known checkpoint or rebuild the pipeline",
            )
        )


def _check_has_steps(pipeline: Pipeline, findings: list[ValidationFinding]) -> None:
    if not pipeline.steps and not pipeline.completed:
        findings.append(
            ValidationFinding(
                level=ValidationLevel.INFO,
                message="Pipeline has no steps",
                rule="no_steps",
            )
        )
