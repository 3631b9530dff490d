"""
Context window segmentation.

Splits a time-ordered message backlog into a size-bounded prefix, cutting at
the most natural pause in the conversation that makes the prefix fit.
"""

from typing import Callable, List, Optional, Sequence, Tuple

from ..models.core import Message
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SizeFn = Callable[[Message], int]


def gaps_in_seconds(messages: Sequence[Message]) -> List[float]:
    """Absolute time distance of every message to the previous one. The first gap is 0."""
    gaps = [0.0] * len(messages)
    for i in range(1, len(messages)):
        gaps[i] = abs((messages[i].date - messages[i - 1].date).total_seconds())
    return gaps


class ContextWindowSegmenter:
    """Selects gap-aligned message prefixes under a size budget."""

    def __init__(self, size_fn: Optional[SizeFn] = None, chars_per_token: float = 4.0, max_iterations: int = 10000):
        """
        Args:
            size_fn: Size of one message in budget units, token estimate of the text by default
            chars_per_token: Ratio used by the default token estimate
            max_iterations: Upper bound on gap cuts per call
        """
        self.chars_per_token = chars_per_token
        self.size_fn = size_fn or self.estimate_tokens
        self.max_iterations = max_iterations

    def estimate_tokens(self, message: Message) -> int:
        return int(len(message.text or '') / self.chars_per_token) + 1

    def segment(self, messages: Sequence[Message], size_budget: int,
                min_gap_floor: float = 0.0) -> Tuple[List[Message], float]:
        """
        Select the leading group of messages that fits the budget.

        While the current prefix is over budget it is cut just before the
        largest gap inside it (ties go to the earliest gap), as long as that
        gap is at least `min_gap_floor` seconds. Every cut strictly lowers the
        largest remaining gap, so the loop ends after at most one cut per
        distinct gap value. When no gap produces a fit, the prefix is hard cut
        at the budget boundary.

        The same procedure selects the newest chunk when messages are passed
        newest first.

        Args:
            messages: Messages in the order they should be consumed
            size_budget: Maximum accumulated size of the selection
            min_gap_floor: Smallest gap in seconds considered a conversation break

        Returns:
            Tuple of (selected prefix, gap in seconds at which it was cut, 0 if uncut)
        """
        if not messages:
            return [], 0.0

        gaps = gaps_in_seconds(messages)
        sizes = [self.size_fn(message) for message in messages]
        totals = [0] * (len(messages) + 1)
        for i, size in enumerate(sizes):
            totals[i + 1] = totals[i] + size

        end = len(messages)
        cut_gap = 0.0
        iterations = 0

        while totals[end] > size_budget and iterations < self.max_iterations:
            iterations += 1
            best = None
            for i in range(1, end):
                if gaps[i] >= min_gap_floor and (best is None or gaps[i] > gaps[best]):
                    best = i
            if best is None:
                break
            end = best
            cut_gap = gaps[best]

        if iterations >= self.max_iterations:
            logger.warning(f'Segmentation stopped after {iterations} cuts')

        if totals[end] > size_budget:
            hard_end = 1
            while hard_end < end and totals[hard_end + 1] <= size_budget:
                hard_end += 1
            end = hard_end
            cut_gap = gaps[end] if end < len(messages) else 0.0

            if sizes[0] > size_budget and end == 1:
                logger.warning(f'Message {messages[0].message_id} alone exceeds the size budget '
                               f'({sizes[0]} > {size_budget})')

        logger.debug(f'Selected {end} of {len(messages)} messages ({totals[end]} units) '
                     f'by gap of ~{round(cut_gap / 60)}m to fit {size_budget}')
        return list(messages[:end]), cut_gap

    def recent_window(self, messages: Sequence[Message], size_budget: int,
                      min_gap_floor: float = 0.0) -> List[Message]:
        """Newest gap-aligned chunk of an oldest-first list, returned oldest first."""
        selected, _ = self.segment(list(reversed(messages)), size_budget, min_gap_floor)
        selected.reverse()
        return selected


def open_tail_cut(messages: Sequence[Message], window: int) -> List[Message]:
    """
    Drop the conversation that may still be running at the end of a backlog.

    Cuts before the largest gap among the last `window` messages, the latest
    one on ties.

    Returns:
        Messages before the cut, empty if there are fewer than two messages
    """
    if len(messages) < 2:
        return []

    gaps = gaps_in_seconds(messages)
    best = None
    for i in range(max(1, len(messages) - window), len(messages)):
        if best is None or gaps[i] >= gaps[best]:
            best = i

    return list(messages[:best])
