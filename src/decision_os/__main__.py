"""Entry point: python -m decision_os <operation> [json-arguments]

- No args / "tools": list the available operations
- "<operation>":     run it against the discovered store, print JSON

Examples:
    python -m decision_os get_context
    python -m decision_os create_case '{"title": "Add tile caching"}'
    python -m decision_os close_case '{"regret": 0}'
"""

from __future__ import annotations

import json
import logging
import sys

from decision_os.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _list_tools() -> None:
    from decision_os.tools.decision_tools import TOOL_DESCRIPTIONS

    for name, description in TOOL_DESCRIPTIONS.items():
        print(f"  {name:<24} {description}")


def main() -> None:
    config = load_config()
    _setup_logging(config.log_level)

    cmd = sys.argv[1] if len(sys.argv) > 1 else "tools"
    if cmd in ("tools", "-h", "--help"):
        print("Usage: python -m decision_os <operation> [json-arguments]")
        _list_tools()
        return

    try:
        arguments = json.loads(sys.argv[2]) if len(sys.argv) > 2 else {}
    except json.JSONDecodeError as e:
        print(f"Invalid JSON arguments: {e}", file=sys.stderr)
        sys.exit(2)

    from decision_os.errors import DecisionOSError
    from decision_os.tools.decision_tools import get_store, run_tool

    try:
        store = get_store(arguments.get("workspace_path"), config=config)
    except DecisionOSError as e:
        logging.getLogger("decision_os").error("Failed to initialize from %s: %s", config.workspace_path, e)
        print(
            "Set DECISION_OS_PATH to a directory containing .decision-os, "
            "or create ~/.decision-os for global foundations.",
            file=sys.stderr,
        )
        sys.exit(1)

    envelope = run_tool(store, cmd, arguments)
    print(json.dumps(envelope, indent=2, ensure_ascii=False))
    if not envelope["ok"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
