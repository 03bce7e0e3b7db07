"""
Action-tag extraction.

Responses may embed editor directives such as
``<mimir-write path="src/a.js">...</mimir-write>``. This module scans a
response once, left to right, turning each well-formed tag into a typed
action and replacing it in the visible text with a short placeholder.

Rules:
- A tag opens with ``<mimir-KIND`` followed by whitespace or ``>`` and closes
  at the first ``</mimir-KIND>`` after it.
- When tags nest or interleave, the one that opens first wins; its body is
  taken verbatim, so tags inside it are not extracted.
- Unterminated tags and tags missing a required attribute stay in the text
  unchanged.
"""

import logging
import re
from typing import NamedTuple

from ..core.models import (
    Action,
    ActionSet,
    ChatSummaryAction,
    DeleteAction,
    DependencyAction,
    RenameAction,
    WriteAction,
)

logger = logging.getLogger(__name__)

TAG_PREFIX = "mimir-"
TAG_KINDS = ("write", "chat-summary", "rename", "delete", "add-dependency")

_OPEN_TAG = re.compile(
    r"<" + re.escape(TAG_PREFIX) + r"(" + "|".join(TAG_KINDS) + r")(?=[\s>])([^>]*)>"
)
_ATTRIBUTE = re.compile(r'([\w-]+)="([^"]*)"')


class ExtractionResult(NamedTuple):
    actions: ActionSet
    cleaned_response: str


def parse_attributes(attr_text: str) -> dict[str, str]:
    return {name: value for name, value in _ATTRIBUTE.findall(attr_text)}


def build_action(tag: str, attributes: dict[str, str], body: str) -> Action | None:
    """Build the action for one tag, or None if a required attribute is missing."""
    body = body.strip()

    if tag == "write":
        if not attributes.get("path"):
            return None
        return WriteAction(path=attributes["path"], content=body)
    if tag == "chat-summary":
        return ChatSummaryAction(summary=body)
    if tag == "rename":
        if not attributes.get("from") or not attributes.get("to"):
            return None
        return RenameAction(from_path=attributes["from"], to_path=attributes["to"], reason=body)
    if tag == "delete":
        if not attributes.get("path"):
            return None
        return DeleteAction(path=attributes["path"], reason=body)
    if tag == "add-dependency":
        if not attributes.get("name") or not attributes.get("version"):
            return None
        return DependencyAction(
            name=attributes["name"],
            version=attributes["version"],
            is_dev=attributes.get("dev") == "true",
            reason=body,
        )
    return None


def placeholder_for(action: Action) -> str:
    """Visible text that replaces an extracted tag."""
    if isinstance(action, WriteAction):
        return f"[Writing to {action.path}]"
    if isinstance(action, ChatSummaryAction):
        return "[Chat summary created]"
    if isinstance(action, RenameAction):
        return f"[Renaming {action.from_path} to {action.to_path}]"
    if isinstance(action, DeleteAction):
        return f"[Deleting {action.path}]"
    return f"[Adding dependency {action.name}@{action.version}]"


def extract_action_tags(response: str) -> ExtractionResult:
    """
    Extract every action tag from a response in one pass.

    Args:
        response: Full response text

    Returns:
        Actions grouped by kind in document order, and the cleaned text
    """
    actions = ActionSet()
    pieces: list[str] = []
    pos = 0

    while True:
        match = _OPEN_TAG.search(response, pos)
        if match is None:
            break

        tag = match.group(1)
        close = f"</{TAG_PREFIX}{tag}>"
        end = response.find(close, match.end())

        action = None
        if end != -1:
            action = build_action(tag, parse_attributes(match.group(2)), response[match.end():end])

        if action is None:
            # Leave the malformed tag as text and keep scanning after its "<"
            logger.debug(f"Leaving malformed {tag} tag at offset {match.start()}")
            pieces.append(response[pos:match.start() + 1])
            pos = match.start() + 1
            continue

        pieces.append(response[pos:match.start()])
        pieces.append(placeholder_for(action))
        actions.add(action)
        pos = end + len(close)

    pieces.append(response[pos:])
    return ExtractionResult(actions=actions, cleaned_response="".join(pieces))
