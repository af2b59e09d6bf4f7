from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from string import Template
from typing import Any


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
ORACLE_SECTION = "oracle"
_catalog_cache: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog_cache, _catalog_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _catalog_cache is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog_cache

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict) or not isinstance(payload.get(ORACLE_SECTION), dict):
        raise ValueError(f"Prompt catalog must be a JSON object with an '{ORACLE_SECTION}' section.")
    _catalog_cache = payload
    _catalog_mtime_ns = mtime_ns
    return payload


def _resolve_prompt_entry(key: str) -> str:
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    # Long prompts are stored one line per list item.
    if isinstance(node, list) and all(isinstance(line, str) for line in node):
        return "\n".join(node)
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to a string or list of lines: {key}")
    return node


def render_prompt(key: str, **values: Any) -> str:
    """Render a catalog prompt; unknown keys and missing values raise KeyError."""
    template = Template(_resolve_prompt_entry(key))
    try:
        return template.substitute(**values)
    except KeyError as exc:
        missing = str(exc.args[0])
        raise KeyError(f"Missing template value '{missing}' for prompt '{key}'") from exc


def render_oracle_system(decision: str, *, now: datetime | None = None, **task_values: Any) -> str:
    """Shared oracle preamble with the decision's role, followed by its task."""
    base = render_prompt(
        f"{ORACLE_SECTION}.base_system",
        role=render_prompt(f"{ORACLE_SECTION}.{decision}.role"),
        today=(now or datetime.now()).strftime("%Y-%m-%d %H:%M"),
    )
    task = render_prompt(f"{ORACLE_SECTION}.{decision}.task", **task_values)
    return f"{base}\n\n{task}"


def render_oracle_user(decision: str, **values: Any) -> str:
    return render_prompt(f"{ORACLE_SECTION}.{decision}.user", **values)
