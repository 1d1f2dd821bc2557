"""
MVD protocol allow-lists.

While a Minimum Viable Day is active only the protocols on the active type's
list may be scheduled or nudged. Ids appear under both their catalogue name
and their legacy 'proto_' name, and matching is case-insensitive containment
in either direction so prefixed or suffixed aliases resolve to the same entry.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple


class MVDType(str, Enum):
    FULL = "full"
    SEMI_ACTIVE = "semi_active"
    TRAVEL = "travel"


MVD_PROTOCOL_SETS: Dict[MVDType, Tuple[str, ...]] = {
    # Bare minimum for severe struggle
    MVDType.FULL: (
        "proto_morning_light",
        "morning_light_exposure",
        "proto_hydration_electrolytes",
        "hydration_electrolytes",
        "proto_sleep_optimization",
        "sleep_optimization",
    ),
    # Full set plus gentle movement and evening routine
    MVDType.SEMI_ACTIVE: (
        "proto_morning_light",
        "morning_light_exposure",
        "proto_hydration_electrolytes",
        "hydration_electrolytes",
        "proto_sleep_optimization",
        "sleep_optimization",
        "proto_walking_breaks",
        "walking_breaks",
        "proto_evening_light",
        "evening_light_management",
    ),
    # Circadian reset
    MVDType.TRAVEL: (
        "proto_morning_light",
        "morning_light_exposure",
        "proto_hydration_electrolytes",
        "hydration_electrolytes",
        "proto_caffeine_timing",
        "caffeine_timing",
        "proto_evening_light",
        "evening_light_management",
    ),
}

MVD_TYPE_DESCRIPTIONS = {
    MVDType.FULL: "Bare essentials: morning light, hydration, and sleep optimization only",
    MVDType.SEMI_ACTIVE: "Core protocols plus gentle walking and evening light management",
    MVDType.TRAVEL: "Circadian reset focus: extended light exposure and adjusted caffeine timing",
}

# Smaller allow-list = more restrictive; used when several triggers fire at once
MVD_TYPE_RESTRICTIVENESS = {
    MVDType.FULL: 3,
    MVDType.TRAVEL: 2,
    MVDType.SEMI_ACTIVE: 1,
}


def get_all_mvd_approved_protocol_ids() -> List[str]:
    """Union of every MVD allow-list, first-seen order."""
    seen: Dict[str, None] = {}
    for protocols in MVD_PROTOCOL_SETS.values():
        for protocol in protocols:
            seen.setdefault(protocol, None)
    return list(seen)


def is_protocol_approved_for_mvd(protocol_id: str, mvd_type: Optional[MVDType]) -> bool:
    """
    Whether a protocol may run under the given MVD type.

    None means MVD is inactive, so everything is allowed.
    """
    if mvd_type is None:
        return True
    candidate = protocol_id.lower()
    if not candidate:
        return False
    return any(
        candidate in allowed.lower() or allowed.lower() in candidate
        for allowed in MVD_PROTOCOL_SETS[MVDType(mvd_type)]
    )


def is_mvd_eligible(protocol_id: str) -> bool:
    """Approved under at least one MVD type."""
    return any(is_protocol_approved_for_mvd(protocol_id, t) for t in MVDType)


def get_approved_protocol_ids(mvd_type: MVDType) -> Tuple[str, ...]:
    return MVD_PROTOCOL_SETS[MVDType(mvd_type)]


def get_mvd_type_description(mvd_type: MVDType) -> str:
    return MVD_TYPE_DESCRIPTIONS[MVDType(mvd_type)]


def get_mvd_protocol_count(mvd_type: MVDType) -> int:
    """Distinct protocols for a type, counting 'proto_x' and 'x' once."""
    base_names = set()
    for protocol in MVD_PROTOCOL_SETS[MVDType(mvd_type)]:
        base_names.add(protocol[len("proto_"):] if protocol.startswith("proto_") else protocol)
    return len(base_names)
