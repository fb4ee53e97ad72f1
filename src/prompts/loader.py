from __future__ import annotations

from pathlib import Path

from agents.schemas import ConversationHandle
from config.settings import get_settings


def load_prompt(filename: str) -> str:
    """Load a prompt text file shipped with the codebase."""

    prompt_dir = Path(__file__).resolve().parent
    path = prompt_dir / filename
    if not path.exists():
        raise RuntimeError(f"Prompt file not found: {filename}")
    return path.read_text(encoding="utf-8").strip() + "\n"


def caller_context(handle: ConversationHandle | None) -> str:
    if handle is not None and handle.caller_name:
        return f"You already know this caller. Their name is {handle.caller_name}. Address them by name."
    if handle is not None and handle.previous_calls > 0:
        return (
            f"This caller has called {handle.previous_calls} time(s) before but has not given their "
            "name yet. Ask for it early in the conversation and save it with update_caller_name."
        )
    return "This is a first-time caller. Ask for their name early and save it with update_caller_name."


def build_call_instructions(handle: ConversationHandle | None) -> str:
    settings = get_settings()
    return load_prompt("call_assistant.txt").format(
        assistant_name=settings.assistant_name,
        owner_name=settings.owner_name,
        caller_context=caller_context(handle),
    )


def build_summary_instructions() -> str:
    return load_prompt("call_summary.txt").format(owner_name=get_settings().owner_name)
