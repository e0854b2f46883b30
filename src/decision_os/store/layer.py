"""Layer store — durable state for one .decision-os directory.

YAML files are the source of truth. Every write rewrites a whole document;
there is no transaction across files. ID counters live on the instance and
are seeded once from what is on disk.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel

from decision_os.errors import NoActiveCaseError, NotFoundError, ValidationFailure
from decision_os.schemas import (
    Case,
    Foundation,
    FoundationsFile,
    OutcomeSignals,
    PressureEvent,
    PressureEventsFile,
    ProjectConfig,
    Scope,
    parse_model,
    to_document,
)
from decision_os.store.policy import PolicyResult, check_policy
from decision_os.store.review import ReviewReport, build_review

logger = logging.getLogger(__name__)

ACTIVE_CASE_FILE = ".active-case"
CONFIG_FILE = "config.yaml"
SLUG_MAX_LENGTH = 50
RECENT_PRESSURE_LIMIT = 5

_CASE_SEQ = re.compile(r"^(\d+)")
_PRESSURE_SEQ = re.compile(r"^PE-(\d+)$")
_FOUNDATION_SEQ = re.compile(r"^G?F-(\d+)$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return to_document(value)
    return value


@dataclass
class CloseResult:
    """Outcome of closing a case. ``forgotten`` means the case was deleted."""

    case: Case
    forgotten: bool


class LayerStore:
    """Read/write access to one scope's cases, pressure events and foundations."""

    def __init__(self, root: Path, scope: Scope = "PROJECT") -> None:
        self.root = Path(root)
        self.scope = scope
        self._active_case: str | None = None
        self._next_case = 1
        self._next_pressure = 1
        self._next_foundation = 1
        self._initialized = False

    def __repr__(self) -> str:
        return f"LayerStore({str(self.root)!r}, scope={self.scope!r})"

    # ── Paths ─────────────────────────────────────────────────

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_FILE

    @property
    def cases_dir(self) -> Path:
        return self.root / "cases"

    @property
    def foundations_path(self) -> Path:
        return self.root / "defaults" / "foundations.yaml"

    @property
    def active_case_path(self) -> Path:
        return self.root / ACTIVE_CASE_FILE

    def _case_dir(self, case_id: str) -> Path:
        return self.cases_dir / case_id

    def _case_path(self, case_id: str) -> Path:
        return self._case_dir(case_id) / "case.yaml"

    def _pressures_path(self, case_id: str) -> Path:
        return self._case_dir(case_id) / "pressures.yaml"

    # ── Initialization ────────────────────────────────────────

    def initialize(self) -> None:
        """Ensure the directory skeleton, restore the active case, seed counters."""
        if self._initialized:
            return
        for d in (self.root, self.cases_dir, self.foundations_path.parent):
            d.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            project = "_global" if self.scope == "GLOBAL" else (self.root.parent.name or "unnamed-project")
            default = ProjectConfig(project=project, version=1, scope=self.scope)
            self._write_yaml(self.config_path, to_document(default))

        self._restore_active_case()
        self._seed_counters()
        self._initialized = True

    def _restore_active_case(self) -> None:
        path = self.active_case_path
        if not path.exists():
            return
        case_id = path.read_text(encoding="utf-8").strip()
        if case_id and self._case_path(case_id).exists():
            self._active_case = case_id
            logger.info("Restored active case: %s", case_id)
        else:
            path.unlink(missing_ok=True)
            logger.info("Cleared stale active case pointer in %s", self.root)

    def _seed_counters(self) -> None:
        """Scan persisted entities for the highest sequence number per id family."""
        # Forgotten cases leave no directory; config keeps the highest number issued.
        last_case = self.get_config().last_case_seq
        if last_case:
            self._next_case = max(self._next_case, last_case + 1)

        if self.cases_dir.is_dir():
            for case_dir in self.cases_dir.iterdir():
                if not case_dir.is_dir():
                    continue
                self._next_case = self._after(case_dir.name, _CASE_SEQ, self._next_case)
                try:
                    events = self.get_pressure_events(case_dir.name)
                except ValidationFailure as e:
                    logger.warning("Skipping pressure events while seeding counters: %s", e)
                    continue
                for event in events:
                    self._next_pressure = self._after(event.id, _PRESSURE_SEQ, self._next_pressure)

        for foundation in self.get_foundations():
            self._next_foundation = self._after(foundation.id, _FOUNDATION_SEQ, self._next_foundation)
            # Promoted PE ids outlive their forgotten cases here.
            for pe_id in foundation.source_pressures:
                self._next_pressure = self._after(pe_id, _PRESSURE_SEQ, self._next_pressure)

    @staticmethod
    def _after(identifier: str, pattern: re.Pattern[str], current: int) -> int:
        match = pattern.match(identifier)
        if match:
            return max(current, int(match.group(1)) + 1)
        return current

    # ── Config ────────────────────────────────────────────────

    def get_config(self) -> ProjectConfig:
        return self._read_yaml(self.config_path, ProjectConfig, "project config")

    def update_config(self, **changes: Any) -> ProjectConfig:
        current = self.get_config()
        merged = {**to_document(current), **{k: _plain(v) for k, v in changes.items()}}
        validated = parse_model(ProjectConfig, merged, "project config", self.config_path)
        self._write_yaml(self.config_path, to_document(validated))
        return validated

    # ── Active case ───────────────────────────────────────────

    @property
    def active_case(self) -> str | None:
        return self._active_case

    def set_active_case(self, case_id: str | None) -> None:
        """Point the layer at ``case_id`` (or clear it) and persist the marker."""
        if case_id is not None and not self._case_path(case_id).exists():
            raise NotFoundError(f"Case not found: {case_id}")
        self._active_case = case_id
        if case_id:
            self.active_case_path.write_text(case_id, encoding="utf-8")
        else:
            self.active_case_path.unlink(missing_ok=True)

    # ── Cases ─────────────────────────────────────────────────

    def list_cases(self) -> list[Case]:
        """All readable cases sorted by id. Corrupt case documents are skipped."""
        if not self.cases_dir.is_dir():
            return []
        cases: list[Case] = []
        for case_dir in self.cases_dir.iterdir():
            if not case_dir.is_dir() or case_dir.name.startswith("_"):
                continue
            path = case_dir / "case.yaml"
            if not path.exists():
                continue
            try:
                cases.append(self._read_yaml(path, Case, "case"))
            except ValidationFailure as e:
                logger.warning("Skipping unreadable case: %s", e)
        return sorted(cases, key=lambda c: c.id)

    def get_case(self, case_id: str) -> Case | None:
        path = self._case_path(case_id)
        if not path.exists():
            return None
        return self._read_yaml(path, Case, "case")

    def create_case(
        self,
        title: str,
        goal: str | None = None,
        signals: BaseModel | dict[str, Any] | None = None,
        touched_areas: list[str] | None = None,
    ) -> Case:
        """Create a case, make it active, return it. ``signals`` are context signals."""
        if not title or not title.strip():
            raise ValidationFailure("case", [("title", "must not be blank")])

        seq = self._next_case
        case_id = f"{seq:04d}-{self._slugify(title)}"
        self._next_case += 1

        data: dict[str, Any] = {
            "id": case_id,
            "title": title,
            "goal": goal.strip() if goal and goal.strip() else title,
            "status": "ACTIVE",
            "created_at": _now(),
            "pressure_events": [],
        }
        if touched_areas:
            data["context"] = {"touched_areas": list(touched_areas)}
        if signals is not None:
            data["signals"] = {"context": _plain(signals)}
        case = parse_model(Case, data, "case")

        self._write_yaml(self._case_path(case_id), to_document(case))
        self._write_yaml(self._pressures_path(case_id), {"events": []})
        self.update_config(last_case_seq=seq)
        self.set_active_case(case_id)
        logger.info("Created case %s", case_id)
        return case

    def update_case(self, case_id: str, **changes: Any) -> Case:
        current = self.get_case(case_id)
        if current is None:
            raise NotFoundError(f"Case not found: {case_id}")
        merged = {**to_document(current), **{k: _plain(v) for k, v in changes.items()}}
        validated = parse_model(Case, merged, "case", self._case_path(case_id))
        self._write_yaml(self._case_path(case_id), to_document(validated))
        return validated

    def close_case(
        self,
        case_id: str,
        regret: str | int,
        notes: str | None = None,
        regressions: str | None = None,
    ) -> CloseResult:
        """Complete a case and apply the auto-forget rule.

        A case closed with regret "0" whose pressure events are all promoted
        (or that has none) has nothing left to teach: it is deleted, not
        archived. Closing a COMPLETED case again re-evaluates the rule, which
        is how a case blocking forgetting is released once its events are
        promoted.
        """
        current = self.get_case(case_id)
        if current is None:
            raise NotFoundError(f"Case not found: {case_id}")

        outcome_data = {"regret": regret, "notes": notes, "regressions": regressions}
        outcome = parse_model(
            OutcomeSignals,
            {k: v for k, v in outcome_data.items() if v is not None},
            "outcome signals",
        )
        signals = to_document(current.signals) if current.signals else {}
        signals["outcome"] = to_document(outcome)

        updated = self.update_case(
            case_id,
            status="COMPLETED",
            completed_at=_now(),
            signals=signals,
        )

        if self._active_case == case_id:
            self.set_active_case(None)

        forgotten = False
        if outcome.regret == "0":
            events = self.get_pressure_events(case_id)
            if all(e.promoted_to_foundation for e in events):
                self.forget_case(case_id)
                forgotten = True

        return CloseResult(case=updated, forgotten=forgotten)

    def forget_case(self, case_id: str) -> None:
        """Delete a case directory with all its pressure events."""
        case_dir = self._case_dir(case_id)
        if not case_dir.exists():
            return
        shutil.rmtree(case_dir)
        if self._active_case == case_id:
            self.set_active_case(None)
        logger.info("Forgot case %s: no novel pressure retained", case_id)

    # ── Pressure events ───────────────────────────────────────

    def get_pressure_events(self, case_id: str) -> list[PressureEvent]:
        path = self._pressures_path(case_id)
        if not path.exists():
            return []
        return self._read_yaml(path, PressureEventsFile, "pressure events").events

    def _write_pressure_events(self, case_id: str, events: list[PressureEvent]) -> None:
        self._write_yaml(
            self._pressures_path(case_id),
            {"events": [to_document(e) for e in events]},
        )

    def _iter_case_events(self) -> Iterator[tuple[Case, list[PressureEvent]]]:
        """Every case with its events; unreadable pressure files are skipped."""
        for case in self.list_cases():
            try:
                events = self.get_pressure_events(case.id)
            except ValidationFailure as e:
                logger.warning("Skipping unreadable pressure events: %s", e)
                continue
            yield case, events

    def log_pressure(
        self,
        expected: str,
        actual: str,
        adaptation: str,
        remember: str,
        case_id: str | None = None,
        pressure_type: str | None = None,
        context_tags: list[str] | None = None,
    ) -> PressureEvent:
        """Record a divergence against ``case_id`` or the active case."""
        owner = case_id or self._active_case
        if not owner:
            raise NoActiveCaseError("No active case. Create a case first or specify case_id.")

        case = self.get_case(owner)
        if case is None:
            raise NotFoundError(f"Case not found: {owner}")

        data: dict[str, Any] = {
            "id": f"PE-{self._next_pressure:04d}",
            "timestamp": _now(),
            "case_id": owner,
            "pressure_type": pressure_type,
            "context_tags": context_tags,
            "expected": expected,
            "actual": actual,
            "adaptation": adaptation,
            "remember": remember,
        }
        event = parse_model(PressureEvent, data, "pressure event")
        self._next_pressure += 1

        events = self.get_pressure_events(owner)
        events.append(event)
        self._write_pressure_events(owner, events)
        self.update_case(owner, pressure_events=[*case.pressure_events, event.id])
        return event

    def search_pressures(self, query: str) -> list[PressureEvent]:
        """Case-insensitive substring scan over every event in this layer."""
        q = query.lower()
        matches: list[PressureEvent] = []
        for _, events in self._iter_case_events():
            for e in events:
                fields = [e.expected, e.actual, e.adaptation, e.remember, *(e.context_tags or [])]
                if any(q in f.lower() for f in fields):
                    matches.append(e)
        return matches

    # ── Foundations ───────────────────────────────────────────

    def _read_foundations(self) -> list[Foundation]:
        if not self.foundations_path.exists():
            return []
        return self._read_yaml(self.foundations_path, FoundationsFile, "foundations").foundations

    def _write_foundations(self, foundations: list[Foundation]) -> None:
        self._write_yaml(
            self.foundations_path,
            {"foundations": [to_document(f) for f in foundations]},
        )

    def get_foundations(
        self,
        context_tags: list[str] | None = None,
        min_confidence: float | None = None,
    ) -> list[Foundation]:
        foundations = self._read_foundations()
        if context_tags:
            wanted = set(context_tags)
            foundations = [f for f in foundations if wanted & set(f.context_tags)]
        if min_confidence is not None:
            foundations = [f for f in foundations if f.confidence >= min_confidence]
        return foundations

    def get_foundation(self, foundation_id: str) -> Foundation | None:
        for f in self._read_foundations():
            if f.id == foundation_id:
                return f
        return None

    def promote_to_foundation(
        self,
        title: str,
        default_behavior: str,
        context_tags: list[str],
        source_pressures: list[str],
        counter_contexts: list[str] | None = None,
        exit_criteria: str | None = None,
        scope: Scope = "PROJECT",
        origin_project: str | None = None,
    ) -> Foundation:
        """Compress pressure events into a foundation starting at confidence 1."""
        prefix = "GF" if scope == "GLOBAL" else "F"
        ts = _now()
        data: dict[str, Any] = {
            "id": f"{prefix}-{self._next_foundation:04d}",
            "title": title,
            "default_behavior": default_behavior,
            "context_tags": context_tags,
            "counter_contexts": counter_contexts,
            "confidence": 1,
            "scope": scope,
            "origin_project": origin_project,
            "validated_in": [origin_project] if origin_project else None,
            "exit_criteria": exit_criteria,
            "source_pressures": source_pressures,
            "created_at": ts,
            "updated_at": ts,
        }
        foundation = parse_model(Foundation, data, "foundation")
        self._next_foundation += 1

        foundations = self._read_foundations()
        foundations.append(foundation)
        self._write_foundations(foundations)

        for pe_id in source_pressures:
            if not self._mark_pressure_promoted(pe_id, foundation.id):
                logger.warning(
                    "Pressure event %s not found in %s; %s created without marking it",
                    pe_id,
                    self.root,
                    foundation.id,
                )
        return foundation

    def _mark_pressure_promoted(self, pressure_id: str, foundation_id: str) -> bool:
        # Owner is not encoded in the PE id: scan every case.
        for case, events in self._iter_case_events():
            for e in events:
                if e.id == pressure_id:
                    e.promoted_to_foundation = foundation_id
                    self._write_pressure_events(case.id, events)
                    return True
        return False

    def update_foundation(self, foundation_id: str, **patch: Any) -> Foundation:
        foundations = self._read_foundations()
        for idx, f in enumerate(foundations):
            if f.id == foundation_id:
                break
        else:
            raise NotFoundError(f"Foundation not found: {foundation_id}")

        merged = {
            **to_document(foundations[idx]),
            **{k: _plain(v) for k, v in patch.items()},
            "updated_at": _now(),
        }
        updated = parse_model(Foundation, merged, "foundation", self.foundations_path)
        foundations[idx] = updated
        self._write_foundations(foundations)
        return updated

    def remove_foundation(self, foundation_id: str) -> bool:
        """Remove a foundation by id. Returns whether anything was removed."""
        if not self.foundations_path.exists():
            return False
        foundations = self._read_foundations()
        kept = [f for f in foundations if f.id != foundation_id]
        if len(kept) == len(foundations):
            return False
        self._write_foundations(kept)
        logger.info("Removed foundation %s from %s", foundation_id, self.root)
        return True

    # ── Review & policy ───────────────────────────────────────

    def suggest_review(self) -> ReviewReport:
        return build_review(self._iter_case_events())

    def check_policy(self, signals: BaseModel | dict[str, Any]) -> PolicyResult:
        return check_policy(signals)

    # ── Context ───────────────────────────────────────────────

    def get_context(self) -> dict[str, Any]:
        """Project label, active case, its recent pressure, usable foundations."""
        config = self.get_config()
        active = self.get_case(self._active_case) if self._active_case else None
        recent = self.get_pressure_events(active.id)[-RECENT_PRESSURE_LIMIT:] if active else []
        return {
            "project": config.project,
            "active_case": active,
            "recent_pressures": recent,
            "relevant_foundations": [f for f in self.get_foundations() if f.confidence >= 1],
        }

    # ── Helpers ───────────────────────────────────────────────

    def _read_yaml(self, path: Path, model: type[Any], label: str) -> Any:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValidationFailure(label, [("(root)", f"unparseable YAML: {e}")], path) from e
        return parse_model(model, data if data is not None else {}, label, path)

    def _write_yaml(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, width=float("inf"))
        path.write_text(content, encoding="utf-8")

    @staticmethod
    def _slugify(text: str) -> str:
        """Lower-case, non-alphanumeric runs to one hyphen, trimmed, max 50 chars."""
        slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:SLUG_MAX_LENGTH]
        return slug or "untitled"
