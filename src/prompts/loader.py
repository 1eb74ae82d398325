from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path

from calls.models import CallRecord

FALLBACK_PROMPT = "You are a helpful AI assistant making a phone call."


@lru_cache(maxsize=None)
def load_prompt(filename: str) -> str:
    """Load a prompt text file shipped with the codebase."""

    prompt_dir = Path(__file__).resolve().parent
    path = prompt_dir / filename
    if not path.exists():
        raise RuntimeError(f"Prompt file not found: {filename}")
    return path.read_text(encoding="utf-8").strip() + "\n"


def render_call_prompt(record: CallRecord | None) -> str:
    """System prompt briefing the model on the call it is about to hold."""

    if record is None:
        return FALLBACK_PROMPT

    context = json.dumps(record.context, indent=2) if record.context else "None provided"
    return load_prompt("call_agent.txt").format(
        goal=record.goal,
        instructions=record.instructions or "",
        context=context,
    )
