"""Entity and operation-input schemas.

Signals are observable context for a decision. Their documented values are
kept as reference vocabularies for policy rules and hints only: projects
extend them freely (e.g. a GIS_SPATIAL affected surface), so signal fields
are open strings checked for non-emptiness.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints, ValidationError

from decision_os.errors import ValidationFailure

NonEmptyStr = Annotated[str, Field(min_length=1)]
TrimmedStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

# ── Reference vocabularies ───────────────────────────────────

RISK_LEVELS = ("LOW", "MEDIUM", "HIGH")
REVERSIBILITY = ("EASY", "MEDIUM", "HARD")
CHANGE_FREQUENCIES = ("RARE", "OCCASIONAL", "FREQUENT")
NOVELTY = ("LOW", "MEDIUM", "HIGH")
UNCERTAINTY = ("LOW", "MEDIUM", "HIGH")
AFFECTED_SURFACES = (
    "CORE_DOMAIN",
    "INTEGRATION",
    "DATA_MODEL",
    "INFRA_DEPLOY",
    "SECURITY_BOUNDARY",
    "UI_UX",
    "PERFORMANCE_CRITICAL",
)
DIFF_SCOPES = ("LOCAL", "MULTI_MODULE", "CROSS_CUTTING")
DEPENDENCY_CHANGES = ("NONE", "MINOR", "MAJOR")

Regressions = Literal["NONE", "MINOR", "MAJOR"]
Regret = Literal["0", "1", "2", "3"]
CaseStatus = Literal["ACTIVE", "COMPLETED", "ABANDONED"]
PressureType = Literal[
    "CHANGE",
    "IRREVERSIBILITY",
    "COGNITIVE",
    "COUPLING",
    "OPERATIONAL",
    "EXTERNAL",
]
Scope = Literal["GLOBAL", "PROJECT"]
FoundationConfidence = Literal[0, 1, 2, 3]
ValidationLevel = Literal["BASIC", "STANDARD", "STRICT"]


def _coerce_regret(value: Any) -> Any:
    # Loosely-typed callers send 0..3 as numbers; regret is stored as a string.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


RegretInput = Annotated[Regret, BeforeValidator(_coerce_regret)]


# ── Signals ──────────────────────────────────────────────────


class ContextSignals(BaseModel):
    risk_level: NonEmptyStr | None = None
    reversibility: NonEmptyStr | None = None
    change_frequency: NonEmptyStr | None = None
    affected_surface: list[NonEmptyStr] | None = None
    novelty: NonEmptyStr | None = None
    repo_scope: NonEmptyStr | None = None  # project-specific, e.g. BACKEND_ONLY


class ExecutionSignals(BaseModel):
    diff_scope: NonEmptyStr | None = None
    uncertainty: NonEmptyStr | None = None
    dependency_change: NonEmptyStr | None = None


class OutcomeSignals(BaseModel):
    regret: RegretInput
    regressions: Regressions | None = None
    rework_within_14d: bool | None = None
    notes: str | None = None


class CaseSignals(BaseModel):
    context: ContextSignals | None = None
    execution: ExecutionSignals | None = None
    outcome: OutcomeSignals | None = None


class PolicySignals(ContextSignals):
    """Context signals plus the execution-time uncertainty the policy reads."""

    uncertainty: NonEmptyStr | None = None


# ── Decisions ────────────────────────────────────────────────


class Decisions(BaseModel):
    approach: Literal["REUSE", "REFRAME", "BUILD", "HYBRID"]
    posture: Literal["MINIMAL", "BALANCED", "ROBUST"]
    validation_level: ValidationLevel
    confidence: Literal["LOW", "MEDIUM", "HIGH"]


# ── Entities ─────────────────────────────────────────────────


class PressureEvent(BaseModel):
    """A logged moment where the actual outcome differed from expectation."""

    id: str  # PE-0001
    timestamp: str
    case_id: str
    pressure_type: PressureType | None = None
    context_tags: list[str] | None = None
    expected: str
    actual: str
    adaptation: str
    remember: str  # one-liner, candidate foundation text
    outcome: str | None = None
    promoted_to_foundation: str | None = None


class CaseReferences(BaseModel):
    prs: list[str] | None = None
    commits: list[str] | None = None
    issues: list[str] | None = None


class CaseContext(BaseModel):
    repos: dict[str, str] | None = None
    touched_areas: list[str] | None = None
    references: CaseReferences | None = None


class Case(BaseModel):
    """A bounded unit of work: feature, bugfix, refactor, spike."""

    id: str  # 0001-bootstrap-backend
    title: NonEmptyStr
    goal: str | None = None
    status: CaseStatus = "ACTIVE"
    created_at: str
    completed_at: str | None = None
    context: CaseContext | None = None
    signals: CaseSignals | None = None
    decisions: Decisions | None = None
    pressure_events: list[str] = Field(default_factory=list)


class Foundation(BaseModel):
    """Compressed learning distilled from one or more pressure events."""

    id: str  # F-0001 (project) or GF-0001 (global)
    title: NonEmptyStr
    default_behavior: str
    context_tags: list[str] = Field(min_length=1)
    counter_contexts: list[str] | None = None
    confidence: FoundationConfidence
    scope: Scope = "PROJECT"
    origin_project: str | None = None
    validated_in: list[str] | None = None
    exit_criteria: str | None = None
    source_pressures: list[str] = Field(min_length=1)
    created_at: str
    updated_at: str


class ConfigSignals(BaseModel):
    context: dict[str, list[str]] | None = None  # extended signal vocabularies


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    project: NonEmptyStr
    version: int = 1
    scope: Scope = "PROJECT"
    signals: ConfigSignals | None = None
    repos: dict[str, str] | None = None
    last_case_seq: int | None = None  # highest case number ever issued


class PressureEventsFile(BaseModel):
    events: list[PressureEvent] = Field(default_factory=list)


class FoundationsFile(BaseModel):
    foundations: list[Foundation] = Field(default_factory=list)


# ── Operation inputs ─────────────────────────────────────────


class CreateCaseInput(BaseModel):
    title: TrimmedStr
    goal: str | None = None
    signals: ContextSignals | None = None
    touched_areas: list[str] | None = None


class CloseCaseInput(BaseModel):
    case_id: str | None = None  # active case when omitted
    regret: RegretInput
    notes: str | None = None
    regressions: Regressions | None = None


class SetActiveCaseInput(BaseModel):
    case_id: TrimmedStr


class LogPressureInput(BaseModel):
    case_id: str | None = None
    expected: str
    actual: str
    adaptation: str
    remember: str
    pressure_type: PressureType | None = None
    context_tags: list[str] | None = None


class QuickPressureInput(BaseModel):
    case_id: str | None = None
    expected: str
    actual: str
    remember: str | None = None
    adaptation: str | None = None
    pressure_type: PressureType | None = None
    context_tags: list[str] | None = None


class SearchPressuresInput(BaseModel):
    query: TrimmedStr


class GetFoundationsInput(BaseModel):
    context_tags: list[str] | None = None
    min_confidence: float | None = Field(default=None, ge=0, le=3)


class PromoteToFoundationInput(BaseModel):
    title: TrimmedStr
    default_behavior: str
    context_tags: list[str] = Field(min_length=1)
    counter_contexts: list[str] | None = None
    source_pressures: list[str] = Field(min_length=1)
    exit_criteria: str | None = None
    scope: Scope | None = None


class ElevateFoundationInput(BaseModel):
    foundation_id: TrimmedStr
    reason: str | None = None


class ValidateFoundationInput(BaseModel):
    foundation_id: TrimmedStr
    validation_notes: str | None = None


class CheckPolicyInput(BaseModel):
    signals: PolicySignals


# ── Helpers ──────────────────────────────────────────────────

M = TypeVar("M", bound=BaseModel)


def parse_model(model: type[M], data: Any, label: str, path: Path | None = None) -> M:
    """Validate ``data`` against ``model``, raising ValidationFailure on error."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        issues = [
            (".".join(str(part) for part in err["loc"]) or "(root)", err["msg"])
            for err in e.errors()
        ]
        raise ValidationFailure(label, issues, path) from e


def to_document(model: BaseModel) -> dict[str, Any]:
    """Plain dict for persistence: JSON-compatible, absent optionals dropped."""
    return model.model_dump(mode="json", exclude_none=True)
