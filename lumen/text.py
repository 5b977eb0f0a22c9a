import re
from typing import Any, Dict, Iterable, List

# Content containing any of these is an error bubble, not an answer, and is
# never narrated or illustrated.
ERROR_MARKERS = (
    'Error:',
    'rate limit',
    'quota exceeded',
    'API key',
    'Function invoke error',
    'Sorry, I encountered an error',
)

# Prior messages containing any of these are dropped from the history sent to
# the chat model.
HISTORY_EXCLUDE_MARKERS = (
    'Error:',
    'Function invoke error',
    'Sorry, I encountered an error',
    'rate limit exceeded',
    'quota exceeded',
)

MAX_HISTORY = 10

_CODE_FENCE = re.compile(r'```[^\n]*\n?(.*?)```', re.DOTALL)
_IMAGE = re.compile(r'!\[([^\]]*)\]\([^)]*\)')
_LINK = re.compile(r'\[([^\]]+)\]\([^)]*\)')
_INLINE_CODE = re.compile(r'`([^`]*)`')
_HEADER = re.compile(r'^[ \t]*#{1,6}[ \t]*', re.MULTILINE)
_BULLET = re.compile(r'^[ \t]*(?:[-*+]|\d+\.)[ \t]+', re.MULTILINE)
_BLOCKQUOTE = re.compile(r'^[ \t]*>[ \t]?', re.MULTILINE)
_BOLD = re.compile(r'(\*\*|__)(.+?)\1', re.DOTALL)
_ITALIC_STAR = re.compile(r'\*(?!\s)(.+?)(?<!\s)\*', re.DOTALL)
_ITALIC_UNDERSCORE = re.compile(r'(?<!\w)_(?!\s)(.+?)(?<!\s)_(?!\w)', re.DOTALL)
_WHITESPACE = re.compile(r'\s+')


def clean_text_for_speech(text: str) -> str:
    """Strip markdown syntax so the text reads naturally when spoken."""
    if not text:
        return ''
    cleaned = _CODE_FENCE.sub(r'\1', text)
    cleaned = _IMAGE.sub(r'\1', cleaned)
    cleaned = _LINK.sub(r'\1', cleaned)
    cleaned = _INLINE_CODE.sub(r'\1', cleaned)
    cleaned = _HEADER.sub('', cleaned)
    cleaned = _BULLET.sub('', cleaned)
    cleaned = _BLOCKQUOTE.sub('', cleaned)
    cleaned = _BOLD.sub(r'\2', cleaned)
    cleaned = _ITALIC_STAR.sub(r'\1', cleaned)
    cleaned = _ITALIC_UNDERSCORE.sub(r'\1', cleaned)
    return _WHITESPACE.sub(' ', cleaned).strip()


def is_error_content(text: str) -> bool:
    if not text or not text.strip():
        return True
    return any(marker in text for marker in ERROR_MARKERS)


def filter_history(history: Iterable[Dict[str, Any]], limit: int = MAX_HISTORY) -> List[Dict[str, Any]]:
    """Drop error bubbles and empty entries, keeping the last ``limit``."""
    valid = []
    for msg in history or []:
        if not isinstance(msg, dict):
            continue
        content = msg.get('content')
        if not msg.get('role') or not isinstance(content, str) or not content.strip():
            continue
        if any(marker in content for marker in HISTORY_EXCLUDE_MARKERS):
            continue
        valid.append(msg)
    return valid[-limit:] if limit else valid
