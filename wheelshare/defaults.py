"""Built-in activity types every organization starts with."""

import re
from typing import List

from .models import ActivityTypeConfig

_HEX_COLOR_RE = re.compile(r"#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})")


def darken_color(color: str, percent: int = 40) -> str:
    """
    Return `color` darkened by `percent`, as lowercase #rrggbb.

    Accepts #rgb and #rrggbb (the leading # is optional).
    """
    match = _HEX_COLOR_RE.fullmatch(color.strip())
    if not match:
        raise ValueError(f"Not a hex color: {color}")
    hex_digits = match.group(1)
    if len(hex_digits) == 3:
        hex_digits = "".join(ch * 2 for ch in hex_digits)

    factor = 1 - percent / 100
    channels = (int(hex_digits[i:i + 2], 16) for i in (0, 2, 4))
    return "#" + "".join(f"{max(0, int(c * factor)):02x}" for c in channels)


# (key, label, color, highlight_color, icon, description)
_DEFAULT_TYPES = [
    ("meeting", "Meeting", "#0078D4", "#00487f", "people", "Team meetings, stand-ups, and discussions"),
    ("deadline", "Deadline", "#D13438", "#7d1f22", "flag", "Important due dates and milestones"),
    ("event", "Event", "#107C10", "#094a09", "calendar", "Conferences, workshops, and special events"),
    ("planning", "Planning", "#8764B8", "#513c6e", "target", "Sprint planning, roadmap sessions"),
    ("review", "Review", "#FF8C00", "#995400", "checkmark", "Performance reviews, retrospectives"),
    ("training", "Training", "#008272", "#004e44", "graduation", "Learning sessions and skill development"),
    ("holiday", "Holiday", "#E3008C", "#880054", "beach", "Public holidays and vacation periods"),
    ("other", "Other", "#7A7574", "#494645", "star", "Miscellaneous activities"),
]


def default_activity_types(organization_id: str) -> List[ActivityTypeConfig]:
    return [
        ActivityTypeConfig(
            key=key,
            label=label,
            icon=icon,
            color=color,
            highlight_color=highlight,
            description=description,
            organization_id=organization_id,
            is_system=True,
            sort_order=position,
        )
        for position, (key, label, color, highlight, icon, description) in enumerate(_DEFAULT_TYPES, start=1)
    ]
