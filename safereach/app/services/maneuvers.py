"""
Turn-by-turn instruction text.

Routing providers describe each step as a maneuver type, an optional
modifier ("left", "slight right", ...) and the street name. This table
turns them into the sentence shown to the traveler.
"""

from typing import Optional

# type -> (with modifier, without modifier); " on/onto {name}" is appended when known
MANEUVER_TEMPLATES = {
    "depart": ("Head {modifier}", "Start walking", " on {name}"),
    "arrive": ("Arrive at your destination on the {modifier}", "Arrive at your destination", ""),
    "turn": ("Turn {modifier}", "Turn", " onto {name}"),
    "end of road": ("At the end of the road, turn {modifier}", "At the end of the road, turn", " onto {name}"),
    "fork": ("Keep {modifier} at the fork", "Continue at the fork", " onto {name}"),
    "continue": ("Continue {modifier}", "Continue", " on {name}"),
}

DEFAULT_TEMPLATE = ("Continue", "Continue", " on {name}")


def describe_maneuver(maneuver_type: Optional[str], modifier: Optional[str] = None, name: Optional[str] = None) -> str:
    """
    Build a readable instruction for one route step.

    Unknown maneuver types read as "Continue". Missing modifiers and street
    names are left out of the sentence.
    """
    with_modifier, without_modifier, street = MANEUVER_TEMPLATES.get(
        (maneuver_type or "").lower(), DEFAULT_TEMPLATE
    )
    text = with_modifier.format(modifier=modifier) if modifier else without_modifier
    if name and street:
        text += street.format(name=name)
    # "Turn straight" reads badly
    return text.replace("Turn straight", "Go straight")
