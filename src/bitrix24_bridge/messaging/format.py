"""Markdown <-> Bitrix24 BB-code conversion and message chunking.

Bitrix24 Messenger renders BB-code; agents write Markdown. Both directions
are ordered regex rewrites. Code is swapped out for placeholders first so no
later rule can touch its contents, and restored last. The conversion is
lossy: headings become bold, underline and colors are dropped.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from bitrix24_bridge.api.models import Mention

HORIZONTAL_RULE = "─" * 20
BULLET = "•"

_PLACEHOLDER = "\x00{}\x00"
_PLACEHOLDER_RE = re.compile(r"\x00(\d+)\x00")

# Markdown -> BB-code
_MD_FENCED_CODE = re.compile(r"```[\w+-]*\n?(.*?)```", re.DOTALL)
_MD_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_MD_BOLD_ITALIC = re.compile(r"\*\*\*(.+?)\*\*\*")
_MD_BOLD = re.compile(r"\*\*(.+?)\*\*")
_MD_ITALIC = re.compile(r"(?<![\[*])\*(?![\s*])(.+?)(?<!\s)\*(?![\]*])")
_MD_STRIKE = re.compile(r"~~(.+?)~~")
_MD_IMAGE = re.compile(r"!\[[^\]]*\]\(([^)\s]+)\)")
# Link text may already hold converted tags: [[b]Deal[/b]](url)
_MD_LINK = re.compile(r"\[((?:[^\[\]]|\[[^\[\]]*\])+)\]\(([^)]+)\)")
_MD_HEADING = re.compile(r"^#{1,6}[ \t]+(.+)$", re.MULTILINE)
_MD_BULLET = re.compile(r"^[ \t]*[-*+][ \t]+(.+)$", re.MULTILINE)
_MD_RULE = re.compile(r"^[-*_]{3,}[ \t]*$", re.MULTILINE)
_MD_QUOTE = re.compile(r"^>[ \t]?(.*)$", re.MULTILINE)

# BB-code -> Markdown
_BB_CODE = re.compile(r"\[code\](.*?)\[/code\]", re.DOTALL | re.IGNORECASE)
_BB_BOLD = re.compile(r"\[b\](.*?)\[/b\]", re.DOTALL | re.IGNORECASE)
_BB_ITALIC = re.compile(r"\[i\](.*?)\[/i\]", re.DOTALL | re.IGNORECASE)
_BB_STRIKE = re.compile(r"\[s\](.*?)\[/s\]", re.DOTALL | re.IGNORECASE)
_BB_UNDERLINE = re.compile(r"\[u\](.*?)\[/u\]", re.DOTALL | re.IGNORECASE)
_BB_URL_TEXT = re.compile(r"\[url=([^\]]+)\](.*?)\[/url\]", re.DOTALL | re.IGNORECASE)
_BB_URL_BARE = re.compile(r"\[url\](.*?)\[/url\]", re.DOTALL | re.IGNORECASE)
_BB_USER = re.compile(r"\[user=(\d+)\](.*?)\[/user\]", re.DOTALL | re.IGNORECASE)
_BB_COLOR = re.compile(r"\[color=[^\]]+\](.*?)\[/color\]", re.DOTALL | re.IGNORECASE)
_BB_SIZE = re.compile(r"\[size=[^\]]+\](.*?)\[/size\]", re.DOTALL | re.IGNORECASE)
_BB_IMAGE = re.compile(r"\[img(?:[ =][^\]]*)?\](.*?)\[/img\]", re.DOTALL | re.IGNORECASE)
_BB_QUOTE = re.compile(r"\[quote(?:=[^\]]*)?\](.*?)\[/quote\]", re.DOTALL | re.IGNORECASE)
_BB_LIST = re.compile(r"\[list(?:=[^\]]*)?\](.*?)\[/list\]", re.DOTALL | re.IGNORECASE)
_BB_LIST_ITEM = re.compile(r"\[\*\]")
# Closing tags only, and never the "[text](" half of a Markdown link
_BB_ORPHAN_CLOSE = re.compile(r"\[/[a-zA-Z][^\]]*\](?!\()")


def _protect(text: str, pattern: re.Pattern[str], render: Callable[[re.Match[str]], str],
             stash: list[str]) -> str:
    def _swap(match: re.Match[str]) -> str:
        stash.append(render(match))
        return _PLACEHOLDER.format(len(stash) - 1)

    return pattern.sub(_swap, text)


def _restore(text: str, stash: list[str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: stash[int(m.group(1))], text)


def markdown_to_bbcode(md: str) -> str:
    """Convert agent Markdown to Bitrix24 BB-code."""
    stash: list[str] = []
    text = _protect(md, _MD_FENCED_CODE, lambda m: f"[code]{m.group(1)}[/code]", stash)
    text = _protect(text, _MD_INLINE_CODE, lambda m: f"[code]{m.group(1)}[/code]", stash)

    text = _MD_BOLD_ITALIC.sub(r"[b][i]\1[/i][/b]", text)
    text = _MD_BOLD.sub(r"[b]\1[/b]", text)
    text = _MD_ITALIC.sub(r"[i]\1[/i]", text)
    text = _MD_STRIKE.sub(r"[s]\1[/s]", text)
    text = _MD_IMAGE.sub(r"[img]\1[/img]", text)
    text = _MD_LINK.sub(r"[url=\2]\1[/url]", text)
    # BB-code has no headings
    text = _MD_HEADING.sub(r"[b]\1[/b]", text)
    text = _MD_BULLET.sub(BULLET + r" \1", text)
    text = _MD_RULE.sub(HORIZONTAL_RULE, text)
    text = _MD_QUOTE.sub(r"\1", text)

    return _restore(text, stash)


def _render_code(match: re.Match[str]) -> str:
    body = match.group(1).removeprefix("\n").removesuffix("\n")
    return f"```\n{body}\n```"


def _render_quote(match: re.Match[str]) -> str:
    lines = match.group(1).strip("\n").split("\n")
    return "\n".join(f"> {line}" for line in lines)


def _render_list(match: re.Match[str]) -> str:
    items = [item.strip() for item in _BB_LIST_ITEM.split(match.group(1))]
    return "\n".join(f"- {item}" for item in items if item)


def bbcode_to_markdown(bb: str) -> str:
    """Convert Bitrix24 BB-code to Markdown."""
    stash: list[str] = []
    text = _protect(bb, _BB_CODE, _render_code, stash)

    text = _BB_BOLD.sub(r"**\1**", text)
    text = _BB_ITALIC.sub(r"*\1*", text)
    text = _BB_STRIKE.sub(r"~~\1~~", text)
    # Markdown has no underline
    text = _BB_UNDERLINE.sub(r"\1", text)
    text = _BB_URL_TEXT.sub(r"[\2](\1)", text)
    text = _BB_URL_BARE.sub(r"\1", text)
    text = _BB_USER.sub(r"@\2", text)
    text = _BB_COLOR.sub(r"\1", text)
    text = _BB_SIZE.sub(r"\1", text)
    text = _BB_IMAGE.sub(r"![](\1)", text)
    text = _BB_QUOTE.sub(_render_quote, text)
    text = _BB_LIST.sub(_render_list, text)
    text = _BB_ORPHAN_CLOSE.sub("", text)

    return _restore(text, stash)


def extract_mentions(bb: str) -> list[Mention]:
    """User mentions in BB-code text, with the ids bbcode_to_markdown drops."""
    return [
        Mention(user_id=int(m.group(1)), name=m.group(2))
        for m in _BB_USER.finditer(bb)
    ]


def chunk_text(text: str, max_length: int) -> list[str]:
    """Split text into chunks of at most `max_length` characters.

    Prefers paragraph breaks, then line breaks, then sentence ends, then
    spaces; cuts hard only when a run has no break at all. Whitespace at each
    cut is dropped.
    """
    if max_length < 1:
        raise ValueError("max_length must be >= 1")
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        split_at = remaining.rfind("\n\n", 0, max_length + 2)
        if split_at <= 0:
            split_at = remaining.rfind("\n", 0, max_length + 1)
        if split_at <= 0:
            split_at = remaining.rfind(". ", 0, max_length + 1)
            if split_at > 0:
                split_at += 1  # keep the period
        if split_at <= 0:
            split_at = remaining.rfind(" ", 0, max_length + 1)
        if split_at <= 0:
            split_at = max_length

        chunk = remaining[:split_at].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_at:].lstrip()

    return chunks
