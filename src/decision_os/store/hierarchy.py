"""Hierarchical store — GLOBAL → PROJECT cascading scope.

Layers are discovered once, at construction, by walking up from the
workspace to the filesystem root and then appending the user-wide layer.
Order is nearest first. Cases and pressure events are project-local;
foundations are merged across layers and the nearest layer wins a title
clash. Global foundations are recommendations, not rules.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from decision_os.errors import InvariantViolation, NoLayerFoundError, NotFoundError
from decision_os.schemas import Case, Foundation, PressureEvent, ProjectConfig, Scope, to_document
from decision_os.store.layer import RECENT_PRESSURE_LIMIT, CloseResult, LayerStore
from decision_os.store.policy import PolicyResult
from decision_os.store.review import ReviewReport

logger = logging.getLogger(__name__)

LAYER_DIRNAME = ".decision-os"
DEFAULT_GLOBAL_ROOT = Path.home() / LAYER_DIRNAME

CONFIDENCE_CAP = 3
VALIDATIONS_FOR_BOOST = 3

# Coarse lexical contradiction check; trigger words are fixed.
_OPPOSITES = (("always", "never"), ("never", "always"), ("prefer", "avoid"), ("avoid", "prefer"))

LayerFactory = Callable[[Path, Scope], LayerStore]


@dataclass
class SourcedFoundation:
    """A foundation annotated with the layer it was read from."""

    foundation: Foundation
    source_layer: Path
    source_scope: Scope
    relevance: str | None = None  # "directly_relevant" | "general" once ranked

    @property
    def id(self) -> str:
        return self.foundation.id

    @property
    def title(self) -> str:
        return self.foundation.title

    def to_dict(self) -> dict[str, Any]:
        data = to_document(self.foundation)
        data["_source_layer"] = str(self.source_layer)
        data["_source_scope"] = self.source_scope
        if self.relevance is not None:
            data["_relevance"] = self.relevance
        return data


@dataclass
class FoundationConflict:
    title: str
    kind: str  # "shadows" | "contradiction"
    global_foundation: Foundation
    project_foundation: Foundation
    recommendation: str
    overlapping_tags: list[str] = field(default_factory=list)


def discover_layers(start: Path, global_root: Path | None = None) -> list[Path]:
    """Return layer directories for ``start``, nearest first, user-wide last."""
    global_root = Path(global_root or DEFAULT_GLOBAL_ROOT).expanduser().resolve()
    current = Path(start).expanduser().resolve()
    if current.name == LAYER_DIRNAME:
        current = current.parent

    found: list[Path] = []
    seen: set[Path] = set()
    while current != current.parent:
        candidate = current / LAYER_DIRNAME
        if candidate.is_dir():
            resolved = candidate.resolve()
            # The user-wide layer always goes last, even below an ancestor layer.
            if resolved not in seen and resolved != global_root:
                seen.add(resolved)
                found.append(resolved)
        current = current.parent

    if global_root.is_dir():
        found.append(global_root)
    return found


def _contradicts(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return any(x in a and y in b for x, y in _OPPOSITES)


def _case_tags(case: Case) -> set[str]:
    tags: set[str] = set()
    if case.signals and case.signals.context:
        tags.update(s.upper() for s in case.signals.context.affected_surface or [])
    if case.context:
        tags.update(a.upper() for a in case.context.touched_areas or [])
    return tags


def rank_foundations(
    foundations: list[SourcedFoundation],
    active_case: Case | None,
) -> list[SourcedFoundation]:
    """Order foundations by tag overlap with the active case.

    Without an active case, or when the case carries no surfaces or touched
    areas, the input is returned as is.
    """
    if active_case is None:
        return foundations
    tags = _case_tags(active_case)
    if not tags:
        return foundations

    scored = [
        (sum(1 for t in sf.foundation.context_tags if t.upper() in tags), sf)
        for sf in foundations
    ]
    scored.sort(key=lambda pair: pair[0], reverse=True)  # stable
    ranked: list[SourcedFoundation] = []
    for score, sf in scored:
        ranked.append(
            SourcedFoundation(
                foundation=sf.foundation,
                source_layer=sf.source_layer,
                source_scope=sf.source_scope,
                relevance="directly_relevant" if score > 0 else "general",
            )
        )
    return ranked


class HierarchicalStore:
    """One logical knowledge base over a project layer and the user-wide layer."""

    def __init__(
        self,
        workspace_path: Path | str,
        global_root: Path | None = None,
        layer_factory: LayerFactory = LayerStore,
    ) -> None:
        self.workspace_path = Path(workspace_path)
        self.global_root = Path(global_root or DEFAULT_GLOBAL_ROOT).expanduser().resolve()

        paths = discover_layers(self.workspace_path, self.global_root)
        if not paths:
            raise NoLayerFoundError(f"No {LAYER_DIRNAME} found starting from {workspace_path}")

        self.layers: list[LayerStore] = [
            layer_factory(p, "GLOBAL" if p == self.global_root else "PROJECT") for p in paths
        ]
        self.project_layer = self.layers[0]
        self.global_layer: LayerStore | None = next(
            (layer for layer in self.layers[1:] if self._is_global(layer)), None
        )

    def initialize(self) -> None:
        for layer in self.layers:
            layer.initialize()

    @property
    def project_path(self) -> Path:
        return self.project_layer.root

    @property
    def global_path(self) -> Path | None:
        return self.global_layer.root if self.global_layer else None

    def _is_global(self, layer: LayerStore) -> bool:
        return layer.root == self.global_root

    # ── Project-local delegation ──────────────────────────────

    def get_config(self) -> ProjectConfig:
        return self.project_layer.get_config()

    def update_config(self, **changes: Any) -> ProjectConfig:
        return self.project_layer.update_config(**changes)

    @property
    def active_case(self) -> str | None:
        return self.project_layer.active_case

    def set_active_case(self, case_id: str | None) -> None:
        self.project_layer.set_active_case(case_id)

    def list_cases(self) -> list[Case]:
        return self.project_layer.list_cases()

    def get_case(self, case_id: str) -> Case | None:
        return self.project_layer.get_case(case_id)

    def create_case(self, *args: Any, **kwargs: Any) -> Case:
        return self.project_layer.create_case(*args, **kwargs)

    def update_case(self, case_id: str, **changes: Any) -> Case:
        return self.project_layer.update_case(case_id, **changes)

    def close_case(self, case_id: str, *args: Any, **kwargs: Any) -> CloseResult:
        return self.project_layer.close_case(case_id, *args, **kwargs)

    def get_pressure_events(self, case_id: str) -> list[PressureEvent]:
        return self.project_layer.get_pressure_events(case_id)

    def log_pressure(self, *args: Any, **kwargs: Any) -> PressureEvent:
        return self.project_layer.log_pressure(*args, **kwargs)

    def search_pressures(self, query: str) -> list[PressureEvent]:
        return self.project_layer.search_pressures(query)

    def suggest_review(self) -> ReviewReport:
        return self.project_layer.suggest_review()

    def check_policy(self, signals: BaseModel | dict[str, Any]) -> PolicyResult:
        return self.project_layer.check_policy(signals)

    # ── Foundations (merged) ──────────────────────────────────

    def get_foundations(
        self,
        context_tags: list[str] | None = None,
        min_confidence: float | None = None,
    ) -> list[SourcedFoundation]:
        """Foundations from every layer; the nearest layer wins a title clash."""
        merged: list[SourcedFoundation] = []
        seen_titles: set[str] = set()
        for layer in self.layers:
            scope: Scope = "GLOBAL" if self._is_global(layer) else "PROJECT"
            for f in layer.get_foundations(context_tags=context_tags, min_confidence=min_confidence):
                if f.title in seen_titles:
                    continue
                seen_titles.add(f.title)
                merged.append(SourcedFoundation(foundation=f, source_layer=layer.root, source_scope=scope))
        return merged

    def detect_conflicts(self) -> list[FoundationConflict]:
        """Compare project foundations against global ones."""
        if self.global_layer is None:
            return []

        project_foundations = self.project_layer.get_foundations()
        global_foundations = self.global_layer.get_foundations()
        conflicts: list[FoundationConflict] = []

        for pf in project_foundations:
            shadowed = next(
                (gf for gf in global_foundations if gf.title.lower() == pf.title.lower()),
                None,
            )
            if shadowed is not None:
                conflicts.append(
                    FoundationConflict(
                        title=pf.title,
                        kind="shadows",
                        global_foundation=shadowed,
                        project_foundation=pf,
                        recommendation=(
                            f'Project foundation "{pf.title}" shadows global foundation. '
                            "Project version will be used. "
                            "Consider if global should be updated or removed."
                        ),
                    )
                )
                continue

            for gf in global_foundations:
                overlap = [t for t in pf.context_tags if t in gf.context_tags]
                if not overlap or not _contradicts(pf.default_behavior, gf.default_behavior):
                    continue
                conflicts.append(
                    FoundationConflict(
                        title=f"{pf.title} vs {gf.title}",
                        kind="contradiction",
                        global_foundation=gf,
                        project_foundation=pf,
                        recommendation=(
                            f"Potential conflict: Both apply to [{', '.join(overlap)}] "
                            "but may have contradictory guidance. Review and clarify."
                        ),
                        overlapping_tags=overlap,
                    )
                )
        return conflicts

    def promote_to_foundation(
        self,
        title: str,
        default_behavior: str,
        context_tags: list[str],
        source_pressures: list[str],
        counter_contexts: list[str] | None = None,
        exit_criteria: str | None = None,
        scope: Scope | None = None,
        origin_project: str | None = None,
    ) -> Foundation:
        """Create a foundation in the layer matching ``scope``."""
        scope = scope or "PROJECT"
        origin = origin_project or self.get_config().project
        target = self.global_layer if scope == "GLOBAL" and self.global_layer else self.project_layer
        return target.promote_to_foundation(
            title=title,
            default_behavior=default_behavior,
            context_tags=context_tags,
            source_pressures=source_pressures,
            counter_contexts=counter_contexts,
            exit_criteria=exit_criteria,
            scope=scope,
            origin_project=origin,
        )

    def elevate_foundation(self, foundation_id: str, reason: str | None = None) -> Foundation:
        """Move a project foundation into the user-wide layer as a GF- record."""
        if self.global_layer is None:
            raise InvariantViolation(
                f"No global layer at {self.global_root}. "
                f"Create it first with: mkdir -p {self.global_root}"
            )

        foundation = self.project_layer.get_foundation(foundation_id)
        if foundation is None:
            raise NotFoundError(f"Foundation not found in project: {foundation_id}")

        project = self.get_config().project
        body = foundation.default_behavior
        if reason:
            body += f"\n\n[Elevated from {project}: {reason}]"

        elevated = self.global_layer.promote_to_foundation(
            title=foundation.title,
            default_behavior=body,
            context_tags=foundation.context_tags,
            source_pressures=foundation.source_pressures,
            counter_contexts=foundation.counter_contexts,
            exit_criteria=foundation.exit_criteria,
            scope="GLOBAL",
            origin_project=project,
        )
        self.project_layer.remove_foundation(foundation_id)
        logger.info("Retired project foundation %s, elevated to %s", foundation_id, elevated.id)
        return elevated

    def validate_foundation(
        self, foundation_id: str, validation_notes: str | None = None
    ) -> Foundation:
        """Record that a foundation held in this project; boost confidence at 3+ projects."""
        sourced = next((sf for sf in self.get_foundations() if sf.id == foundation_id), None)
        if sourced is None:
            raise NotFoundError(f"Foundation not found: {foundation_id}")

        project = self.get_config().project
        validated_in = list(sourced.foundation.validated_in or [])
        if project not in validated_in:
            validated_in.append(project)

        confidence = sourced.foundation.confidence
        if len(set(validated_in)) >= VALIDATIONS_FOR_BOOST and confidence < CONFIDENCE_CAP:
            confidence += 1

        target = self._layer_at(sourced.source_layer)
        if validation_notes:
            logger.info("Validated %s in %s: %s", foundation_id, project, validation_notes)
        return target.update_foundation(
            foundation_id, validated_in=validated_in, confidence=confidence
        )

    def _layer_at(self, root: Path) -> LayerStore:
        for layer in self.layers:
            if layer.root == root:
                return layer
        raise InvariantViolation(f"No layer at {root}")

    # ── Context (merged) ──────────────────────────────────────

    def get_context(self) -> dict[str, Any]:
        """Everything an agent needs at the start of a task."""
        config = self.get_config()
        active_id = self.active_case
        active = self.get_case(active_id) if active_id else None
        recent = self.get_pressure_events(active.id)[-RECENT_PRESSURE_LIMIT:] if active else []
        usable = [sf for sf in self.get_foundations() if sf.foundation.confidence >= 1]
        return {
            "project": config.project,
            "active_case": active,
            "recent_pressures": recent,
            "relevant_foundations": rank_foundations(usable, active),
            "conflicts": self.detect_conflicts(),
            "layers": [str(layer.root) for layer in self.layers],
        }
