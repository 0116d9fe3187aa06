"""
Classification of the target program's visible terminal output.

The classifier turns a pane capture into a PromptKind; the confirmation loop
in tmux_injector decides what to do with it using CONFIRMATION_ACTIONS.
"""
import re
from enum import Enum
from typing import Dict, Tuple

# Only the bottom of the pane is considered, so answered prompts that have
# scrolled up do not trigger again.
TAIL_LINES = 20


class PromptKind(str, Enum):
    PROCEED_MULTI_OPTION = "proceed_multi_option"
    PROCEED_SINGLE_OPTION = "proceed_single_option"
    YES_NO = "yes_no"
    PRESS_ENTER = "press_enter"
    IN_PROGRESS = "in_progress"
    SETTLED = "settled"
    ERROR_SEEN = "error_seen"
    UNRECOGNIZED = "unrecognized"


_PROCEED = re.compile(r'proceed\s*\?', re.IGNORECASE)
_OPTION_ONE_YES = re.compile(r'1\.\s*Yes', re.IGNORECASE)
_OPTION_TWO_DONT_ASK = re.compile(r"2\.\s*Yes.*?don'?t[\s-]*ask", re.IGNORECASE | re.DOTALL)
_SELECTED_OPTION_ONE = re.compile(r'[❯▷>]\s*1\.\s*Yes', re.IGNORECASE)
_YES_NO = re.compile(r'[(\[]\s*y\s*/\s*n\s*[)\]]', re.IGNORECASE)
_PRESS_ENTER = re.compile(r'press enter|enter to (confirm|continue)', re.IGNORECASE)
_IN_PROGRESS = re.compile(
    r'(Clauding|Waiting|Processing|Working|Thinking)(…|\.\.\.)|in progress|esc to interrupt',
    re.IGNORECASE
)
_EMPTY_PROMPT = re.compile(r'^[\s│|]*>[\s│|]*$', re.MULTILINE)
_ERROR = re.compile(r'\berror:|\bfailed\b', re.IGNORECASE)

# Keys sent for each prompt that needs answering
CONFIRMATION_ACTIONS: Dict[PromptKind, Tuple[str, ...]] = {
    PromptKind.PROCEED_MULTI_OPTION: ("2", "Enter"),
    PromptKind.PROCEED_SINGLE_OPTION: ("1", "Enter"),
    PromptKind.YES_NO: ("y", "Enter"),
    PromptKind.PRESS_ENTER: ("Enter",),
}

# Kinds that end the confirmation loop
TERMINAL_KINDS = frozenset({PromptKind.SETTLED, PromptKind.ERROR_SEEN})


def screen_tail(output: str, lines: int = TAIL_LINES) -> str:
    non_blank = [line for line in output.splitlines() if line.strip()]
    return "\n".join(non_blank[-lines:])


def classify_screen(output: str) -> PromptKind:
    """Classify a pane capture, checking prompt shapes in priority order"""
    text = screen_tail(output or "")
    if not text:
        return PromptKind.UNRECOGNIZED

    proceed = bool(_PROCEED.search(text))

    if proceed and _OPTION_TWO_DONT_ASK.search(text):
        return PromptKind.PROCEED_MULTI_OPTION

    if _SELECTED_OPTION_ONE.search(text) or (proceed and _OPTION_ONE_YES.search(text)):
        return PromptKind.PROCEED_SINGLE_OPTION

    if _YES_NO.search(text):
        return PromptKind.YES_NO

    if _PRESS_ENTER.search(text):
        return PromptKind.PRESS_ENTER

    if _IN_PROGRESS.search(text):
        return PromptKind.IN_PROGRESS

    if _EMPTY_PROMPT.search(text):
        return PromptKind.SETTLED

    if _ERROR.search(text):
        return PromptKind.ERROR_SEEN

    return PromptKind.UNRECOGNIZED
