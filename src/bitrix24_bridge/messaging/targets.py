"""DIALOG_ID parsing and formatting.

Bitrix24 addresses a dialog in one of two ways:
  - "123"     direct message with user 123
  - "chat456" group chat 456
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

_CHAT_DIALOG = re.compile(r"chat(\d+)", re.IGNORECASE)
_USER_DIALOG = re.compile(r"\d+")


class DialogIdError(ValueError):
    """A DIALOG_ID string that is neither a user id nor chatN."""

    def __init__(self, dialog_id: str) -> None:
        super().__init__(f'Invalid DIALOG_ID: "{dialog_id}"')
        self.dialog_id = dialog_id


@dataclass(frozen=True)
class ParsedTarget:
    type: Literal["user", "chat"]
    id: int
    dialog_id: str


def parse_dialog_id(dialog_id: str) -> ParsedTarget:
    """Parse a DIALOG_ID into a user or chat target."""
    chat = _CHAT_DIALOG.fullmatch(dialog_id)
    if chat:
        return ParsedTarget(type="chat", id=int(chat.group(1)), dialog_id=dialog_id)

    if _USER_DIALOG.fullmatch(dialog_id):
        user_id = int(dialog_id)
        if user_id > 0:
            return ParsedTarget(type="user", id=user_id, dialog_id=str(user_id))

    raise DialogIdError(dialog_id)


def user_dialog_id(user_id: int) -> str:
    return str(user_id)


def chat_dialog_id(chat_id: int) -> str:
    return f"chat{chat_id}"


def extract_chat_id(dialog_id: str, to_chat_id: int | None = None) -> int | None:
    """Numeric chat id for im.disk.file.commit.

    Group dialogs carry it in the DIALOG_ID. For direct messages it only comes
    from the event's TO_CHAT_ID, so callers pass that along.
    """
    target = parse_dialog_id(dialog_id)
    if target.type == "chat":
        return target.id
    return to_chat_id
