from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from storyforge.contracts.models import AgeBand, Concern, ContentSafetyLevel, Severity


Stage = Literal["pre", "post", "any"]


@dataclass(frozen=True)
class Rule:
    id: str
    category: str
    description: str
    pattern: re.Pattern[str]
    severity: Severity = Severity.HIGH
    stage: Stage = "any"
    # Adjustable rules soften under moderate/permissive safety levels
    adjustable: bool = False


def _words(*terms: str) -> re.Pattern[str]:
    return re.compile(r"(?i)\b(" + "|".join(terms) + r")\b")


DENY_RULES: list[Rule] = [
    Rule(
        id="GRAPHIC_VIOLENCE",
        category="violence",
        description="Graphic violence, killing or gore.",
        pattern=_words("kill(?:s|ed|ing)?", "murder(?:s|ed)?", "gore", "bloodbath", "stab(?:bed|bing)?", "behead\\w*", "massacre"),
    ),
    Rule(
        id="WEAPONS",
        category="violence",
        description="Firearms, explosives and weapons used against people.",
        pattern=_words("guns?", "rifles?", "shotguns?", "pistols?", "bombs?", "grenades?", "explosives?"),
        adjustable=True,
    ),
    Rule(
        id="SEXUAL_CONTENT",
        category="sexual",
        description="Sexual or romantic-physical content; never acceptable for children.",
        pattern=_words("sex\\w*", "nude", "naked", "porn\\w*", "erotic\\w*", "seductive\\w*"),
    ),
    Rule(
        id="SELF_HARM",
        category="self_harm",
        description="Self-harm or suicide.",
        pattern=_words("suicide", "self[- ]harm", "cutting herself", "cutting himself", "kill (?:him|her|my)self"),
    ),
    Rule(
        id="SUBSTANCES",
        category="substances",
        description="Drugs, alcohol and smoking.",
        pattern=_words("drugs?", "cocaine", "heroin", "alcohol", "beer", "vodka", "whisk(?:e)?y", "cigarettes?", "vap(?:e|ing)"),
        adjustable=True,
    ),
    Rule(
        id="HATE",
        category="hate",
        description="Slurs and demeaning content about protected groups.",
        pattern=_words("inferior race", "subhuman", "ethnic cleansing"),
    ),
    Rule(
        id="PROFANITY",
        category="profanity",
        description="Swearing.",
        pattern=_words("damn", "hell", "crap", "shit\\w*", "fuck\\w*", "bitch\\w*", "bastard"),
        severity=Severity.LOW,
        adjustable=True,
    ),
    Rule(
        id="FRIGHTENING_THEMES",
        category="scary_content",
        description="Horror imagery that may frighten young children.",
        pattern=_words("haunted", "zombies?", "demons?", "corpses?", "skeletons?", "nightmares?", "terrif(?:ied|ying)"),
        severity=Severity.LOW,
        adjustable=True,
    ),
    Rule(
        id="PROMPT_INJECTION",
        category="prompt_injection",
        description="Attempts to override the story-writing instructions.",
        pattern=re.compile(
            r"(?i)\b(ignore|disregard|forget)\s+(all\s+|any\s+)?(the\s+)?(previous|prior|above|earlier)\s+(instructions|rules|guidelines)"
        ),
        stage="pre",
    ),
]


PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    "phone": re.compile(r"(?<!\d)(?:\+?\d{1,3}[\s.-]?)?(?:\(\d{3}\)|\d{3})[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)"),
    "street_address": re.compile(
        r"(?i)\b\d{1,5}\s+(?:[A-Z][a-z]+\s){1,3}(?:street|st|avenue|ave|road|rd|lane|ln|drive|dr|boulevard|blvd|court|ct)\b\.?"
    ),
    "social_handle": re.compile(r"(?<![\w@])@[A-Za-z0-9_]{3,30}\b"),
}

# Leaking contact details in generated content is high severity; addresses
# and handles are often fictional and only warrant a closer human look.
PII_POST_SEVERITY: dict[str, Severity] = {
    "email": Severity.HIGH,
    "phone": Severity.HIGH,
    "street_address": Severity.LOW,
    "social_handle": Severity.LOW,
}

# Upper bound of average words per sentence before text reads above the band
READING_LEVEL_MAX_SENTENCE: dict[AgeBand, float] = {
    AgeBand.TODDLER: 10.0,
    AgeBand.EARLY: 14.0,
    AgeBand.MIDDLE: 20.0,
    AgeBand.TEEN: 28.0,
}

READING_LEVEL_TOLERANCE = 1.5


def effective_severity(rule: Rule, level: ContentSafetyLevel) -> Severity:
    if not rule.adjustable or level == ContentSafetyLevel.STRICT:
        return rule.severity
    if rule.severity == Severity.LOW:
        return Severity.NONE
    if level == ContentSafetyLevel.PERMISSIVE:
        return Severity.LOW
    return rule.severity


def rules_for_stage(stage: Stage) -> list[Rule]:
    return [rule for rule in DENY_RULES if rule.stage in ("any", stage)]


def evaluate_rules(
    text: str,
    stage: Stage,
    level: ContentSafetyLevel = ContentSafetyLevel.STRICT,
) -> list[Concern]:
    concerns: list[Concern] = []
    for rule in rules_for_stage(stage):
        match = rule.pattern.search(text)
        if not match:
            continue
        severity = effective_severity(rule, level)
        if severity == Severity.NONE:
            continue
        concerns.append(
            Concern(
                category=rule.category,
                severity=severity,
                detail=f"{rule.id}: matched '{match.group(0)[:40]}'",
            )
        )
    return concerns


def detect_pii(text: str) -> list[str]:
    return [kind for kind, pattern in PII_PATTERNS.items() if pattern.search(text)]


def pii_concerns(text: str, stage: Stage) -> list[Concern]:
    concerns = []
    for kind in detect_pii(text):
        severity = PII_POST_SEVERITY[kind] if stage == "post" else Severity.LOW
        concerns.append(Concern(category="pii", severity=severity, detail=kind))
    return concerns


def average_sentence_length(text: str) -> float:
    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if not sentences:
        return 0.0
    words = sum(len(s.split()) for s in sentences)
    return words / len(sentences)


def reading_level_concern(text: str, age_band: AgeBand) -> Concern | None:
    average = average_sentence_length(text)
    ceiling = READING_LEVEL_MAX_SENTENCE[age_band] * READING_LEVEL_TOLERANCE
    if average <= ceiling:
        return None
    return Concern(
        category="reading_level",
        severity=Severity.LOW,
        detail=f"average sentence length {average:.1f} words exceeds {ceiling:.1f} for ages {age_band.value}",
    )
