"""Prompt templates for AI note actions."""

import os
import re
from typing import Optional

from models import ActionKind

DEFAULT_PROMPTS: dict[ActionKind, str] = {
    ActionKind.SUMMARIZE: "Summarize the following note in 4-5 sentences:\n\n{content}",
    ActionKind.ASK: (
        "Given the following note, answer the user's question as clearly as possible.\n\n"
        "Note:\n{content}\n\nQuestion: {question}\nAnswer:"
    ),
    ActionKind.REWRITE: "Rewrite the following note to be clearer, more concise, and engaging:\n\n{content}",
    ActionKind.IMPROVE: (
        "Suggest improvements for the following note. "
        "List specific suggestions for clarity, grammar, and style:\n\n{content}"
    ),
    ActionKind.FIX: (
        "Correct any grammar, spelling, or punctuation errors in the following note. "
        "Return the corrected note only:\n\n{content}"
    ),
    ActionKind.HEADING: (
        "Generate a concise, relevant, and engaging title for the following note. "
        "Return only the title:\n\n{content}"
    ),
}

REWRITE_INSTRUCTION = "\n\nAdditional instruction: {question}"

_PLACEHOLDER = re.compile(r"\{(content|question)\}")


def load_prompts() -> dict[ActionKind, str]:
    """Built-in templates, each overridable by AI_PROMPT_<ACTION> (e.g. AI_PROMPT_SUMMARIZE)."""
    return {
        kind: os.getenv(f"AI_PROMPT_{kind.name}") or template
        for kind, template in DEFAULT_PROMPTS.items()
    }


def build_prompt(
    action: ActionKind,
    content: str,
    question: Optional[str] = None,
    templates: Optional[dict[ActionKind, str]] = None,
) -> str:
    """
    Substitute content and question into the action's template.

    Substitution is a single pass over the template, so user text that
    contains "{question}" or braces is inserted verbatim.
    """
    templates = templates or DEFAULT_PROMPTS
    template = templates[action]
    if action is ActionKind.REWRITE and question and "{question}" not in template:
        template += REWRITE_INSTRUCTION

    values = {"content": content, "question": question or ""}
    return _PLACEHOLDER.sub(lambda match: values[match.group(1)], template)
