"""
Weight event classification.

Turns a shelf mass delta into a typed event. Nothing here touches the
database: matching a delta against catalog books needs lease and inventory
state and happens in the committer.
"""

from collections import namedtuple

NOISE = "noise"
CANDIDATE_REMOVAL = "candidate_removal"
CANDIDATE_ADDITION = "candidate_addition"


Classification = namedtuple(
    "Classification", ["shelf_id", "kind", "delta", "previous_mass", "new_mass"]
)
Classification.__doc__ = """\
``delta`` is the absolute mass change; ``kind`` carries the direction."""


def classify(shelf_id, previous_mass, new_mass, noise_floor):
    if noise_floor < 0:
        raise ValueError("noise_floor must be non-negative")
    change = float(new_mass) - float(previous_mass)
    delta = abs(change)
    if delta <= noise_floor:
        kind = NOISE
    elif change < 0:
        kind = CANDIDATE_REMOVAL
    else:
        kind = CANDIDATE_ADDITION
    return Classification(shelf_id, kind, delta, float(previous_mass), float(new_mass))


def mass_matches(nominal_mass, delta, tolerance):
    """True when a book of ``nominal_mass`` explains a change of ``delta``."""
    if nominal_mass is None:
        return False
    return abs(float(nominal_mass) - abs(float(delta))) <= tolerance


def mass_error(nominal_mass, delta):
    return abs(float(nominal_mass) - abs(float(delta)))
