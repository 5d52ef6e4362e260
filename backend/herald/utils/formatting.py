"""
Formatting utilities for batch notification text.
"""
from typing import List


def strip_title_prefix(title: str, prefix: str) -> str:
    """Remove a boilerplate prefix such as "Task Deadline Reminder:" and any quotes from a title."""
    stripped = title.replace(prefix, "", 1).replace('"', "").strip()
    return stripped.lstrip(":-").strip() or title


def summarize_titles(titles: List[str], limit: int = 2) -> str:
    """Format titles for a merged notification body.

    "A"                -> '"A"'
    "A", "B"           -> '"A" and "B"'
    "A", "B", "C", "D" -> '"A", "B" and 2 others'
    """
    quoted = [f'"{t}"' for t in titles[:limit]]
    remaining = len(titles) - len(quoted)

    if remaining > 0:
        label = "other" if remaining == 1 else "others"
        return f"{', '.join(quoted)} and {remaining} {label}"
    if len(quoted) > 1:
        return f"{', '.join(quoted[:-1])} and {quoted[-1]}"
    return quoted[0] if quoted else ""


def pluralize(count: int, singular: str, plural: str) -> str:
    """Return "1 Habit Reminder" or "3 Habit Reminders"."""
    return f"{count} {singular if count == 1 else plural}"
