"""Surface-pattern classification of agent activity from captured pane text."""

import re
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import ActivityState

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 30

# Rule priorities, lower wins
PRIORITY_ERROR = 10
PRIORITY_PROCESSING = 20
PRIORITY_COMPLETION = 30
PRIORITY_PROMPT = 40

# Patterns that indicate the agent hit an error
ERROR_PATTERNS = [
    r'^\s*error:',
    r'^\s*fatal:',
    r'^\s*exception:',
    r'Traceback \(most recent call last\)',
    r'panic:',
    r'rate.?limit',
    r'api.?error',
]

# Patterns that indicate the agent is working
PROCESSING_PATTERNS = [
    r'[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]',
    r'\b(thinking|processing|running|loading)\.{1,3}',
    r'esc to interrupt',
    r'\[=+>?\s*\]',
    r'\[#+\s*\]',
]

# Patterns that indicate a finished task
COMPLETION_PATTERNS = [
    r'Task complete',
    r'^\s*Done\.',
    r'^\s*Finished\.',
    r'All tests passed',
]

# Patterns that indicate the agent is waiting at a prompt or question
PROMPT_PATTERNS = [
    r'^\s*>\s*$',
    r'^\s*(claude|aider)>\s*$',
    r'^[│|]\s*>\s',
    r'^[^>\n]*>\s*$',
    r'^[^$\n]*\$\s*$',
    r'^───.*───\s*$',
    r'\[Y/n\]',
    r'\[y/N\]',
    r'Do you want to proceed\?',
    r'Press Enter to continue',
]

# States that may be entered from PROCESSING; anything else needs the prior state to be non-processing
EXIT_PROCESSING_STATES = frozenset({
    ActivityState.WAITING_FOR_INPUT,
    ActivityState.IDLE,
    ActivityState.ERRORED,
})


@dataclass(frozen=True)
class ActivityRule:
    """One row of the classification table.

    ``scope`` limits the rule to the last N lines of the analysed window;
    None means the whole window.
    """
    name: str
    pattern: re.Pattern
    state: ActivityState
    priority: int
    scope: Optional[int] = None

    def matches(self, lines: list[str]) -> bool:
        window = lines[-self.scope:] if self.scope else lines
        return any(self.pattern.search(line) for line in window)


def _rules(prefix: str, patterns: list[str], state: ActivityState, priority: int,
           scope: Optional[int], flags: int = 0) -> list[ActivityRule]:
    return [
        ActivityRule(f"{prefix}:{i}", re.compile(p, flags), state, priority, scope)
        for i, p in enumerate(patterns)
    ]


DEFAULT_RULES: tuple[ActivityRule, ...] = tuple(
    _rules("error", ERROR_PATTERNS, ActivityState.ERRORED, PRIORITY_ERROR, 10, re.IGNORECASE)
    + _rules("processing", PROCESSING_PATTERNS, ActivityState.PROCESSING, PRIORITY_PROCESSING, 5, re.IGNORECASE)
    + _rules("completion", COMPLETION_PATTERNS, ActivityState.IDLE, PRIORITY_COMPLETION, 5, re.IGNORECASE)
    + _rules("prompt", PROMPT_PATTERNS, ActivityState.WAITING_FOR_INPUT, PRIORITY_PROMPT, 3)
)


class ActivityDetector:
    """Pure classifier: ``classify(previous, content) -> ActivityState``.

    Only the trailing ``tail_lines`` non-blank lines are inspected. Rules are
    evaluated in priority order and the first match wins. When nothing
    matches, the previous state is kept, which also gives the processing
    hysteresis: a half-written line never knocks the session out of
    PROCESSING, only a prompt, completion or error marker does.
    """

    def __init__(self, rules: Optional[Iterable[ActivityRule]] = None, tail_lines: int = DEFAULT_TAIL_LINES):
        self.rules = sorted(rules if rules is not None else DEFAULT_RULES, key=lambda r: r.priority)
        self.tail_lines = tail_lines

    def tail(self, content: str) -> list[str]:
        lines = content.splitlines()
        # capture-pane pads the visible area with blank rows
        while lines and not lines[-1].strip():
            lines.pop()
        return lines[-self.tail_lines:]

    def match(self, content: str) -> Optional[ActivityRule]:
        """Return the winning rule for ``content``, or None."""
        lines = self.tail(content)
        if not lines:
            return None
        for rule in self.rules:
            if rule.matches(lines):
                return rule
        return None

    def classify(self, previous: ActivityState, content: Optional[str]) -> ActivityState:
        if content is None:
            return ActivityState.UNKNOWN

        rule = self.match(content)
        if rule is None:
            return previous

        if previous == ActivityState.PROCESSING and rule.state not in EXIT_PROCESSING_STATES:
            return previous

        if rule.state != previous:
            logger.debug(f"Activity {previous.value} -> {rule.state.value} via {rule.name}")
        return rule.state
