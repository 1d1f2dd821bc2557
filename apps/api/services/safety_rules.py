"""
Safety keyword tables.

Static, versioned data: crisis keywords with severities and benign-use
exclusions, the stricter phrase list for generated text, and the crisis
resources shown per severity. Nothing here is mutated at runtime; bump
SAFETY_RULES_VERSION whenever a table changes so audit rows can be traced to
the ruleset that produced them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

SAFETY_RULES_VERSION = "2024.1"


class CrisisSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_PRIORITY = {
    CrisisSeverity.LOW: 1,
    CrisisSeverity.MEDIUM: 2,
    CrisisSeverity.HIGH: 3,
}


@dataclass(frozen=True)
class CrisisKeyword:
    phrase: str
    severity: CrisisSeverity
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CrisisResource:
    name: str
    description: str
    contact: str
    type: str  # hotline | text | website | chat
    for_severities: Tuple[CrisisSeverity, ...]
    priority: int

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "contact": self.contact,
            "type": self.type,
        }


_HIGH = CrisisSeverity.HIGH
_MEDIUM = CrisisSeverity.MEDIUM
_LOW = CrisisSeverity.LOW

CRISIS_KEYWORDS: Tuple[CrisisKeyword, ...] = (
    # High: immediate risk to life
    CrisisKeyword("suicide", _HIGH, (
        "suicide squad", "suicide awareness", "suicide prevention", "suicide hotline", "prevent suicide",
    )),
    CrisisKeyword("suicidal", _HIGH, ("suicidal ideation awareness", "prevent suicidal")),
    CrisisKeyword("kill myself", _HIGH, ("kill myself laughing", "kill myself with kindness")),
    CrisisKeyword("end my life", _HIGH),
    CrisisKeyword("don't want to live", _HIGH),
    CrisisKeyword("dont want to live", _HIGH),
    CrisisKeyword("want to die", _HIGH, (
        "want to die laughing", "want to die of laughter", "want to die from", "want to die when",
    )),
    CrisisKeyword("overdose", _HIGH, (
        "caffeine overdose", "sugar overdose", "information overdose", "vitamin overdose", "supplement overdose",
    )),
    # Medium: self-harm
    CrisisKeyword("self-harm", _MEDIUM, ("prevent self-harm", "self-harm awareness")),
    CrisisKeyword("self harm", _MEDIUM, ("prevent self harm", "self harm awareness")),
    CrisisKeyword("cutting", _MEDIUM, (
        "cutting calories", "cutting carbs", "cutting workout", "cutting edge", "cutting back",
        "cutting down", "cutting out", "cutting sugar", "cutting fat", "cutting weight",
        "cutting phase", "cutting season",
    )),
    CrisisKeyword("hurt myself", _MEDIUM, (
        "hurt myself at the gym", "hurt myself working out", "hurt myself exercising",
        "hurt myself running", "hurt myself lifting", "hurt myself training", "hurt myself playing",
    )),
    CrisisKeyword("harming myself", _MEDIUM),
    # Low: eating disorders
    CrisisKeyword("eating disorder", _LOW, ("eating disorder recovery", "overcome eating disorder")),
    CrisisKeyword("anorexia", _LOW, ("anorexia recovery", "overcome anorexia")),
    CrisisKeyword("bulimia", _LOW, ("bulimia recovery", "overcome bulimia")),
    CrisisKeyword("purging", _LOW, (
        "purging toxins", "purging clutter", "purging old", "purging files", "purging data", "purging my closet",
    )),
    CrisisKeyword("binge eating", _LOW, ("binge eating recovery", "overcome binge eating")),
)

# Never acceptable in generated text, whatever the context
AI_OUTPUT_BLOCKED_PHRASES: Tuple[str, ...] = (
    "kill yourself",
    "end your life",
    "commit suicide",
    "you should die",
    "better off dead",
    "cut yourself",
    "hurt yourself",
    "harm yourself",
    "take all the pills",
    "overdose on",
    "starve yourself",
    "skip meals",
    "stop eating",
    "purge after",
)

CRISIS_RESOURCES: Tuple[CrisisResource, ...] = (
    CrisisResource(
        name="988 Suicide & Crisis Lifeline",
        description="24/7 free and confidential support for people in distress",
        contact="Call or text 988",
        type="hotline",
        for_severities=(_HIGH, _MEDIUM, _LOW),
        priority=1,
    ),
    CrisisResource(
        name="Crisis Text Line",
        description="Free, 24/7, confidential text-based crisis support",
        contact="Text HOME to 741741",
        type="text",
        for_severities=(_HIGH, _MEDIUM, _LOW),
        priority=2,
    ),
    CrisisResource(
        name="SAMHSA National Helpline",
        description="Substance Abuse and Mental Health Services Administration",
        contact="Call 1-800-662-4357",
        type="hotline",
        for_severities=(_HIGH, _MEDIUM),
        priority=3,
    ),
    CrisisResource(
        name="International Association for Suicide Prevention",
        description="Find a crisis center in your country",
        contact="https://www.iasp.info/resources/Crisis_Centres/",
        type="website",
        for_severities=(_HIGH, _MEDIUM),
        priority=4,
    ),
    CrisisResource(
        name="NEDA Helpline",
        description="National Eating Disorders Association support and resources",
        contact="Call 1-800-931-2237",
        type="hotline",
        for_severities=(_LOW,),
        priority=3,
    ),
    CrisisResource(
        name="NEDA Chat",
        description="Online chat with NEDA helpline counselors",
        contact="https://www.nationaleatingdisorders.org/help-support/contact-helpline",
        type="chat",
        for_severities=(_LOW,),
        priority=4,
    ),
)

RESOURCE_COUNT_BY_SEVERITY = {
    CrisisSeverity.HIGH: 4,
    CrisisSeverity.MEDIUM: 3,
    CrisisSeverity.LOW: 2,
}

SEVERITY_DESCRIPTIONS = {
    CrisisSeverity.HIGH: "Immediate risk - suicide/overdose indicators",
    CrisisSeverity.MEDIUM: "Self-harm indicators",
    CrisisSeverity.LOW: "Eating disorder indicators",
}


def get_resources_for_severity(severity: CrisisSeverity, limit: Optional[int] = None) -> List[CrisisResource]:
    """Resources shown for a severity, lowest priority number first."""
    matching = sorted(
        (r for r in CRISIS_RESOURCES if severity in r.for_severities),
        key=lambda r: r.priority,
    )
    return matching[:limit] if limit else matching


def get_highest_severity(severities: Iterable[CrisisSeverity]) -> Optional[CrisisSeverity]:
    highest = None
    for severity in severities:
        if highest is None or SEVERITY_PRIORITY[severity] > SEVERITY_PRIORITY[highest]:
            highest = severity
    return highest
