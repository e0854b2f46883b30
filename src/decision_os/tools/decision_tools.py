"""Named decision-os operations for an agent's tool surface.

Each tool validates its arguments against the input schemas, calls the
hierarchical store and returns plain JSON-compatible data. The transport
that exposes them (MCP, CLI, ...) is the caller's business.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from decision_os.config import DecisionOSConfig, load_config
from decision_os.errors import DecisionOSError, NoActiveCaseError, ValidationFailure
from decision_os.schemas import (
    CheckPolicyInput,
    CloseCaseInput,
    CreateCaseInput,
    ElevateFoundationInput,
    GetFoundationsInput,
    LogPressureInput,
    PromoteToFoundationInput,
    QuickPressureInput,
    Scope,
    SearchPressuresInput,
    SetActiveCaseInput,
    ValidateFoundationInput,
    parse_model,
    to_document,
)
from decision_os.store.hierarchy import HierarchicalStore, SourcedFoundation
from decision_os.store.layer import LayerStore

logger = logging.getLogger(__name__)

QUICK_ADAPTATION = "(captured for review)"

TOOL_DESCRIPTIONS: dict[str, str] = {
    "get_context": "Active case, recent pressure, ranked foundations and conflicts",
    "list_cases": "All cases in the project layer, flagging the active one",
    "create_case": "Create a case and make it active",
    "set_active_case": "Switch the active case",
    "close_case": "Close a case (the active one by default) with outcome signals",
    "log_pressure": "Log a pressure event when reality differs from expectation",
    "quick_pressure": "Capture a surprise with only expected/actual",
    "search_pressures": "Search pressure events by text or tag",
    "get_foundations": "Merged foundations, annotated with their source layer",
    "promote_to_foundation": "Compress pressure events into a foundation",
    "elevate_foundation": "Move a project foundation into the global layer",
    "validate_foundation": "Record that a foundation held in this project",
    "detect_conflicts": "Project foundations that shadow or contradict global ones",
    "suggest_review": "Unextracted learnings and forgetting opportunities",
    "check_policy": "Options comparison and validation level for a set of signals",
}

# Per-process caches: one store per workspace, one LayerStore per layer directory.
_stores: dict[Path, HierarchicalStore] = {}
_layers: dict[Path, LayerStore] = {}


def _open_layer(root: Path, scope: Scope) -> LayerStore:
    key = Path(root).resolve()
    if key not in _layers:
        _layers[key] = LayerStore(key, scope)
    return _layers[key]


def get_store(
    workspace_path: str | Path | None = None,
    config: DecisionOSConfig | None = None,
) -> HierarchicalStore:
    """Return the initialized store for a workspace, creating it on first use."""
    config = config or load_config()
    path = Path(workspace_path or config.workspace_path).expanduser().resolve()
    if path not in _stores:
        store = HierarchicalStore(path, global_root=config.global_dir, layer_factory=_open_layer)
        store.initialize()
        _stores[path] = store
        logger.info("Decision OS initialized from %s", path)
    return _stores[path]


def clear_store_cache() -> None:
    _stores.clear()
    _layers.clear()


def to_plain(value: Any) -> Any:
    """Convert store results (models, dataclasses, paths) to JSON-compatible data."""
    if isinstance(value, SourcedFoundation):
        return value.to_dict()
    if isinstance(value, BaseModel):
        return to_document(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


def get_decision_tools(store: HierarchicalStore) -> dict[str, Callable[..., Any]]:
    """Return a dict of tool_name -> callable(**arguments).

    These can be registered as MCP tools or called directly.
    """

    def get_context(**_: Any) -> dict:
        """Active case, recent pressure, ranked foundations and conflicts."""
        return to_plain(store.get_context())

    def list_cases(**_: Any) -> list[dict]:
        active = store.active_case
        return [
            {"id": c.id, "title": c.title, "status": c.status, "active": c.id == active}
            for c in store.list_cases()
        ]

    def create_case(**arguments: Any) -> dict:
        """Create a case and make it active."""
        args = parse_model(CreateCaseInput, arguments, "create_case input")
        case = store.create_case(
            title=args.title,
            goal=args.goal,
            signals=args.signals,
            touched_areas=args.touched_areas,
        )
        return to_plain(case)

    def set_active_case(**arguments: Any) -> dict:
        args = parse_model(SetActiveCaseInput, arguments, "set_active_case input")
        store.set_active_case(args.case_id)
        case = store.get_case(args.case_id)
        return {"case_id": args.case_id, "title": case.title if case else None}

    def close_case(**arguments: Any) -> dict:
        """Close a case (the active one by default) with outcome signals."""
        args = parse_model(CloseCaseInput, arguments, "close_case input")
        case_id = args.case_id or store.active_case
        if not case_id:
            raise NoActiveCaseError("No active case. Specify case_id.")
        result = store.close_case(
            case_id,
            regret=args.regret,
            notes=args.notes,
            regressions=args.regressions,
        )
        return to_plain(result)

    def log_pressure(**arguments: Any) -> dict:
        """Log a pressure event when reality differs from expectation."""
        args = parse_model(LogPressureInput, arguments, "log_pressure input")
        return to_plain(store.log_pressure(**args.model_dump()))

    def quick_pressure(**arguments: Any) -> dict:
        """Capture a surprise with only expected/actual; the rest is defaulted."""
        args = parse_model(QuickPressureInput, arguments, "quick_pressure input")
        remember = args.remember or (
            f"Expected: {args.expected[:40]}… but: {args.actual[:40]}…"
        )
        event = store.log_pressure(
            expected=args.expected,
            actual=args.actual,
            adaptation=args.adaptation or QUICK_ADAPTATION,
            remember=remember,
            case_id=args.case_id,
            pressure_type=args.pressure_type,
            context_tags=args.context_tags,
        )
        return to_plain(event)

    def search_pressures(**arguments: Any) -> list[dict]:
        args = parse_model(SearchPressuresInput, arguments, "search_pressures input")
        return to_plain(store.search_pressures(args.query))

    def get_foundations(**arguments: Any) -> list[dict]:
        """Merged foundations, annotated with their source layer."""
        args = parse_model(GetFoundationsInput, arguments, "get_foundations input")
        return to_plain(
            store.get_foundations(
                context_tags=args.context_tags,
                min_confidence=args.min_confidence,
            )
        )

    def promote_to_foundation(**arguments: Any) -> dict:
        args = parse_model(PromoteToFoundationInput, arguments, "promote_to_foundation input")
        return to_plain(store.promote_to_foundation(**args.model_dump()))

    def elevate_foundation(**arguments: Any) -> dict:
        args = parse_model(ElevateFoundationInput, arguments, "elevate_foundation input")
        return to_plain(store.elevate_foundation(args.foundation_id, reason=args.reason))

    def validate_foundation(**arguments: Any) -> dict:
        args = parse_model(ValidateFoundationInput, arguments, "validate_foundation input")
        return to_plain(
            store.validate_foundation(args.foundation_id, validation_notes=args.validation_notes)
        )

    def detect_conflicts(**_: Any) -> list[dict]:
        return to_plain(store.detect_conflicts())

    def suggest_review(**_: Any) -> dict:
        """Unextracted learnings and forgetting opportunities."""
        return to_plain(store.suggest_review())

    def check_policy(**arguments: Any) -> dict:
        args = parse_model(CheckPolicyInput, arguments, "check_policy input")
        return to_plain(store.check_policy(args.signals))

    return {
        "get_context": get_context,
        "list_cases": list_cases,
        "create_case": create_case,
        "set_active_case": set_active_case,
        "close_case": close_case,
        "log_pressure": log_pressure,
        "quick_pressure": quick_pressure,
        "search_pressures": search_pressures,
        "get_foundations": get_foundations,
        "promote_to_foundation": promote_to_foundation,
        "elevate_foundation": elevate_foundation,
        "validate_foundation": validate_foundation,
        "detect_conflicts": detect_conflicts,
        "suggest_review": suggest_review,
        "check_policy": check_policy,
    }


def run_tool(store: HierarchicalStore, name: str, arguments: dict[str, Any] | None = None) -> dict:
    """Call one tool and wrap the outcome in an ``ok``/error envelope."""
    tool = get_decision_tools(store).get(name)
    if tool is None:
        return {"ok": False, "operation": name, "error": "UnknownTool", "message": f"Unknown tool: {name}"}

    args = {k: v for k, v in (arguments or {}).items() if k != "workspace_path"}
    try:
        return {"ok": True, "result": tool(**args)}
    except DecisionOSError as e:
        logger.warning("%s failed: %s", name, e)
        envelope: dict[str, Any] = {
            "ok": False,
            "operation": name,
            "error": type(e).__name__,
            "message": str(e),
        }
        if isinstance(e, ValidationFailure):
            envelope["issues"] = [{"field": f, "reason": r} for f, r in e.issues]
        return envelope
