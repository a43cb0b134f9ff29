"""
Content classifiers behind a single async interface.

RuleBasedClassifier scores thematic density locally and needs no network.
ModerationClassifier delegates to an OpenAI-compatible moderation endpoint.
Both return a SafetyVerdict; the pipeline merges it with its own policy
checks and enforces the timeout.
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod

from openai import AsyncOpenAI

from storyforge.contracts.models import Concern, ContentSafetyLevel, SafetyVerdict, Severity

logger = logging.getLogger(__name__)


class Classifier(ABC):
    name: str = "classifier"

    @abstractmethod
    async def classify(
        self,
        text: str,
        stage: str,
        level: ContentSafetyLevel = ContentSafetyLevel.STRICT,
    ) -> SafetyVerdict:
        """Classify text; raise on backend faults, the pipeline handles them."""

    async def close(self) -> None:
        return None


# Theme lexicons scored as hits per 100 words
THEME_LEXICONS: dict[str, tuple[str, ...]] = {
    "peril": ("danger", "trapped", "chase", "chased", "scream", "screamed", "lost", "alone", "dark", "storm"),
    "conflict": ("fight", "fought", "punch", "hit", "angry", "attack", "attacked", "enemy", "battle", "war"),
    "sadness": ("cried", "crying", "tears", "died", "dead", "death", "grief", "funeral", "goodbye forever"),
}

# (low, high) density thresholds per safety level
DENSITY_THRESHOLDS: dict[ContentSafetyLevel, tuple[float, float]] = {
    ContentSafetyLevel.STRICT: (2.0, 5.0),
    ContentSafetyLevel.MODERATE: (3.5, 8.0),
    ContentSafetyLevel.PERMISSIVE: (6.0, 12.0),
}


class RuleBasedClassifier(Classifier):
    name = "rule_based"

    def __init__(self, lexicons: dict[str, tuple[str, ...]] | None = None) -> None:
        self._patterns = {
            category: re.compile(r"(?i)\b(" + "|".join(re.escape(t) for t in terms) + r")\b")
            for category, terms in (lexicons or THEME_LEXICONS).items()
        }

    async def classify(
        self,
        text: str,
        stage: str,
        level: ContentSafetyLevel = ContentSafetyLevel.STRICT,
    ) -> SafetyVerdict:
        words = max(1, len(text.split()))
        low, high = DENSITY_THRESHOLDS[level]
        concerns = []
        for category, pattern in self._patterns.items():
            hits = len(pattern.findall(text))
            if not hits:
                continue
            density = hits * 100.0 / words
            if density >= high:
                severity = Severity.HIGH
            elif density >= low:
                severity = Severity.LOW
            else:
                continue
            concerns.append(
                Concern(
                    category=category,
                    severity=severity,
                    detail=f"{hits} matches ({density:.1f} per 100 words)",
                )
            )
        return SafetyVerdict.from_concerns(stage, concerns)


class ModerationClassifier(Classifier):
    """
    OpenAI moderation endpoint adapter.

    Category scores at or above ``high_threshold`` are high severity, at or
    above ``low_threshold`` low severity. Reads MODERATION_API_KEY, falling
    back to OPENAI_API_KEY.
    """

    name = "moderation"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = "omni-moderation-latest",
        low_threshold: float = 0.2,
        high_threshold: float = 0.6,
    ) -> None:
        key = api_key or os.environ.get("MODERATION_API_KEY", "") or os.environ.get("OPENAI_API_KEY", "")
        if not key:
            raise ValueError("An API key is required for the moderation classifier")
        self._client = AsyncOpenAI(
            api_key=key,
            base_url=base_url or os.environ.get("MODERATION_BASE_URL") or None,
            max_retries=0,
        )
        self._model = model
        self._low = low_threshold
        self._high = high_threshold

    async def classify(
        self,
        text: str,
        stage: str,
        level: ContentSafetyLevel = ContentSafetyLevel.STRICT,
    ) -> SafetyVerdict:
        response = await self._client.moderations.create(model=self._model, input=text)
        if not response.results:
            raise RuntimeError("moderation endpoint returned no results")
        scores = response.results[0].category_scores.model_dump(by_alias=True)

        # Children's content: the level only relaxes the low threshold
        low = self._low if level == ContentSafetyLevel.STRICT else min(self._high, self._low * 2)
        concerns = []
        for category, score in scores.items():
            if score is None:
                continue
            if score >= self._high:
                severity = Severity.HIGH
            elif score >= low:
                severity = Severity.LOW
            else:
                continue
            concerns.append(
                Concern(category=category, severity=severity, detail=f"score {score:.2f}")
            )
        return SafetyVerdict.from_concerns(stage, concerns)

    async def close(self) -> None:
        await self._client.close()


def build_classifier(name: str) -> Classifier:
    key = name.strip().lower()
    if key in ("", "rule_based", "rules"):
        return RuleBasedClassifier()
    if key == "moderation":
        return ModerationClassifier()
    raise ValueError(f"Unknown classifier '{name}'. Available: rule_based, moderation")
