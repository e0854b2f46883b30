"""Retrospective review over a layer's completed cases.

Finds three things worth a human's attention:

- cases that would have been forgotten but for unpromoted pressure events
- high-regret cases that captured no pressure at all
- clusters of unpromoted pressure events sharing a context tag, which are
  candidates for compression into a foundation
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from decision_os.schemas import Case, PressureEvent

NOTHING_TO_REVIEW = "Nothing to review. All learnings extracted or cases forgotten."


@dataclass
class FoundationCandidate:
    theme: str
    pressure_events: list[str]
    remember_lines: list[str]
    shared_tags: list[str]


@dataclass
class BlockingCase:
    case_id: str
    title: str
    unpromoted_pe_count: int
    pe_ids: list[str]


@dataclass
class UncapturedRegret:
    case_id: str
    title: str
    regret: str


@dataclass
class ReviewReport:
    foundation_candidates: list[FoundationCandidate] = field(default_factory=list)
    blocking_forgetting: list[BlockingCase] = field(default_factory=list)
    high_regret_no_pe: list[UncapturedRegret] = field(default_factory=list)
    summary: str = NOTHING_TO_REVIEW


def _regret_of(case: Case) -> str | None:
    if case.signals and case.signals.outcome:
        return case.signals.outcome.regret
    return None


def build_review(cases: Iterable[tuple[Case, list[PressureEvent]]]) -> ReviewReport:
    """Analyse ``(case, events)`` pairs. Only COMPLETED cases are considered."""
    report = ReviewReport()
    unpromoted_all: list[PressureEvent] = []

    for case, events in cases:
        if case.status != "COMPLETED":
            continue
        unpromoted = [e for e in events if not e.promoted_to_foundation]
        unpromoted_all.extend(unpromoted)
        regret = _regret_of(case)

        if regret == "0" and unpromoted:
            report.blocking_forgetting.append(
                BlockingCase(
                    case_id=case.id,
                    title=case.title,
                    unpromoted_pe_count=len(unpromoted),
                    pe_ids=[e.id for e in unpromoted],
                )
            )

        if regret is not None and int(regret) >= 2 and not events:
            report.high_regret_no_pe.append(
                UncapturedRegret(case_id=case.id, title=case.title, regret=regret)
            )

    report.foundation_candidates = _cluster_by_tag(unpromoted_all)
    report.summary = _summarize(report)
    return report


def _cluster_by_tag(events: list[PressureEvent]) -> list[FoundationCandidate]:
    groups: dict[str, list[PressureEvent]] = {}
    for event in events:
        for tag in event.context_tags or []:
            groups.setdefault(tag, []).append(event)

    candidates: list[FoundationCandidate] = []
    seen: set[frozenset[str]] = set()
    for tag, members in groups.items():
        if len(members) < 2:
            continue
        key = frozenset(e.id for e in members)
        if key in seen:
            continue
        seen.add(key)

        all_tags: list[str] = []
        for e in members:
            for t in e.context_tags or []:
                if t not in all_tags:
                    all_tags.append(t)
        shared = [t for t in all_tags if all(t in (e.context_tags or []) for e in members)]

        candidates.append(
            FoundationCandidate(
                theme=tag,
                pressure_events=[e.id for e in members],
                remember_lines=[f"{e.id}: {e.remember}" for e in members],
                shared_tags=shared,
            )
        )
    return candidates


def _summarize(report: ReviewReport) -> str:
    parts: list[str] = []
    if report.foundation_candidates:
        parts.append(
            f"{len(report.foundation_candidates)} foundation candidate(s) from clustered PEs"
        )
    if report.blocking_forgetting:
        parts.append(
            f"{len(report.blocking_forgetting)} case(s) blocking forgetting "
            "(regret 0 but unpromoted PEs)"
        )
    if report.high_regret_no_pe:
        parts.append(
            f"{len(report.high_regret_no_pe)} high-regret case(s) with no PEs "
            "(possible missed captures)"
        )
    if not parts:
        return NOTHING_TO_REVIEW
    return ". ".join(parts) + "."
