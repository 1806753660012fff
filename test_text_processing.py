"""Tests for fingerprints, markup sanitization and prompt building."""

import pytest

from hashing import fingerprint
from models import ActionKind
from prompts import DEFAULT_PROMPTS, build_prompt, load_prompts
from sanitizer import sanitize


# --- fingerprint -------------------------------------------------------------

def test_fingerprint_is_deterministic():
    first = fingerprint(ActionKind.SUMMARIZE, "The quick brown fox.")
    second = fingerprint(ActionKind.SUMMARIZE, "The quick brown fox.")
    assert first == second
    assert len(first) == 64
    assert first == first.lower()
    int(first, 16)


def test_fingerprint_accepts_action_value():
    assert fingerprint("ask", "note", "why?") == fingerprint(ActionKind.ASK, "note", "why?")


def test_each_field_changes_fingerprint():
    base = fingerprint(ActionKind.ASK, "note body", "when?")
    variants = {
        fingerprint(ActionKind.REWRITE, "note body", "when?"),
        fingerprint(ActionKind.ASK, "note body!", "when?"),
        fingerprint(ActionKind.ASK, "note body", "where?"),
        fingerprint(ActionKind.ASK, "note body", None),
    }
    assert base not in variants
    assert len(variants) == 4


def test_fingerprint_field_boundaries_are_unambiguous():
    assert fingerprint(ActionKind.ASK, "ab", "c") != fingerprint(ActionKind.ASK, "a", "bc")


def test_fingerprint_rejects_unknown_action():
    with pytest.raises(ValueError):
        fingerprint("translate", "content")


# --- sanitize ----------------------------------------------------------------

def test_plain_text_unchanged():
    assert sanitize("The quick brown fox.") == "The quick brown fox."


def test_allowed_tags_kept_attributes_dropped():
    assert sanitize('<b onclick="steal()">bold</b> and <em>em</em>') == "<b>bold</b> and <em>em</em>"


def test_disallowed_tags_discarded_text_kept():
    assert sanitize('<div>hello <a href="https://x.test">link</a></div>') == "hello link"


def test_script_and_style_removed_with_content():
    assert sanitize("<script>alert(1)</script>safe<style>p{}</style>") == "safe"


def test_empty_input():
    assert sanitize("") == ""


@pytest.mark.parametrize(
    "raw",
    [
        "<script>document.cookie</script><p>hi</p>",
        '<img src=x onerror="alert(1)">caption',
        "<ul><li>one</li><li><iframe>two</iframe></li></ul>",
        "a < b && c > d",
        "<b>unclosed <i>nesting",
        "<!-- comment -->text<br>line",
    ],
)
def test_sanitize_is_idempotent(raw):
    once = sanitize(raw)
    assert sanitize(once) == once
    assert "<script" not in once
    assert "onerror" not in once


# --- prompts -----------------------------------------------------------------

def test_every_action_has_a_template():
    assert set(DEFAULT_PROMPTS) == set(ActionKind)
    for action in ActionKind:
        assert "{content}" in DEFAULT_PROMPTS[action]


def test_ask_prompt_includes_question():
    prompt = build_prompt(ActionKind.ASK, "Meeting on Thursday.", "When is the meeting?")
    assert "Meeting on Thursday." in prompt
    assert "Question: When is the meeting?" in prompt


def test_rewrite_question_becomes_extra_instruction():
    prompt = build_prompt(ActionKind.REWRITE, "draft text", "Make it formal")
    assert prompt.endswith("Additional instruction: Make it formal")
    assert "Additional instruction" not in build_prompt(ActionKind.REWRITE, "draft text")


def test_question_ignored_for_other_actions():
    prompt = build_prompt(ActionKind.SUMMARIZE, "text", "ignored?")
    assert "ignored?" not in prompt


def test_user_text_is_not_re_expanded():
    prompt = build_prompt(ActionKind.ASK, "literal {question} and {braces}", "Q?")
    assert "literal {question} and {braces}" in prompt


def test_prompt_override_from_environment(monkeypatch):
    monkeypatch.setenv("AI_PROMPT_SUMMARIZE", "TL;DR: {content}")
    templates = load_prompts()

    assert build_prompt(ActionKind.SUMMARIZE, "long note", templates=templates) == "TL;DR: long note"
    assert templates[ActionKind.FIX] == DEFAULT_PROMPTS[ActionKind.FIX]
