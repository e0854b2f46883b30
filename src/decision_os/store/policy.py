"""Policy decision table: what a set of context signals requires before work starts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from decision_os.schemas import PolicySignals, parse_model

COMPARISON_SURFACES = {"CORE_DOMAIN", "DATA_MODEL", "SECURITY_BOUNDARY"}
STRICT_SURFACES = {"SECURITY_BOUNDARY", "INFRA_DEPLOY", "PERFORMANCE_CRITICAL", "DATA_MODEL"}
STANDARD_SURFACES = {"INTEGRATION", "CORE_DOMAIN"}


@dataclass
class PolicyResult:
    require_options_comparison: bool
    validation_level: str
    warnings: list[str] = field(default_factory=list)


def check_policy(signals: PolicySignals | BaseModel | dict[str, Any]) -> PolicyResult:
    """Evaluate the policy table. No I/O; every rule is checked independently."""
    if isinstance(signals, BaseModel) and not isinstance(signals, PolicySignals):
        signals = signals.model_dump(exclude_none=True)
    if not isinstance(signals, PolicySignals):
        signals = parse_model(PolicySignals, signals, "policy signals")

    surfaces = set(signals.affected_surface or [])
    warnings: list[str] = []

    require_comparison = (
        signals.reversibility == "HARD"
        or signals.risk_level == "HIGH"
        or signals.repo_scope == "CROSS_REPO"
        or bool(surfaces & COMPARISON_SURFACES)
        or signals.uncertainty == "HIGH"
    )
    if require_comparison:
        warnings.append(
            "Policy requires MINIMAL vs ROBUST options comparison before implementation."
        )

    if (
        signals.risk_level == "HIGH"
        or signals.reversibility == "HARD"
        or surfaces & STRICT_SURFACES
        or signals.uncertainty == "HIGH"
    ):
        level = "STRICT"
    elif (
        signals.risk_level == "MEDIUM"
        or signals.repo_scope == "CROSS_REPO"
        or surfaces & STANDARD_SURFACES
    ):
        level = "STANDARD"
    else:
        level = "BASIC"

    return PolicyResult(
        require_options_comparison=require_comparison,
        validation_level=level,
        warnings=warnings,
    )
