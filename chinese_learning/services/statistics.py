"""
Learner statistics helpers.

``incremental_average`` keeps ``User.total_attempts``/``User.average_score``
as an exact running mean; it is the only code path that writes them.
``summarize_recent_scores`` derives the best score and a windowed
"recent improvement" signal for display.
"""

from typing import Optional, Sequence, Tuple

RECENT_WINDOW = 5
STATISTICS_WINDOW = RECENT_WINDOW * 2


def incremental_average(count: int, average: Optional[float], score: float) -> Tuple[int, float]:
    """
    Fold a new score into a running mean.

    Args:
        count: Number of scores already averaged
        average: Current mean (None for a learner with no completed attempts)
        score: New score to add

    Returns:
        Tuple of (new_count, new_average rounded to one decimal place)
    """
    current = average or 0.0
    new_count = count + 1
    new_average = (current * count + score) / new_count
    return new_count, round(new_average, 1)


def _mean(scores: Sequence[float]) -> float:
    return sum(scores) / len(scores) if scores else 0.0


def summarize_recent_scores(scores: Sequence[float]) -> Tuple[float, float]:
    """
    Compute (best_score, recent_improvement) from completed scores, newest first.

    Only the first ten scores are considered. Improvement compares the
    newest five against the five before them; with no earlier five it is 0.
    """
    window = list(scores[:STATISTICS_WINDOW])
    best_score = max(window, default=0.0)

    recent = window[:RECENT_WINDOW]
    previous = window[RECENT_WINDOW:]

    recent_avg = _mean(recent)
    previous_avg = _mean(previous) if previous else recent_avg

    return best_score, recent_avg - previous_avg
