"""
Two-stage safety pipeline.

pre_check runs on the assembled prompt before any provider is called;
post_check runs on the generated content and produces the verdict that
decides between rejection and review. Both merge local policy rules with
the classifier. The classifier runs under a hard timeout; a timeout or
fault never fails the request, it yields an inconclusive verdict that is
routed to manual review.

The pipeline holds no per-call state and is safe to share between tasks.
"""

from __future__ import annotations

import asyncio
import logging

from storyforge.contracts.models import (
    Concern,
    GenerationParameters,
    SafetyVerdict,
)
from storyforge.observability.metrics import safety_verdicts
from storyforge.safety.classifiers import Classifier, RuleBasedClassifier
from storyforge.safety.policies import (
    evaluate_rules,
    pii_concerns,
    reading_level_concern,
)

logger = logging.getLogger(__name__)


class SafetyPipeline:

    def __init__(
        self,
        classifier: Classifier | None = None,
        classifier_timeout: float = 10.0,
    ) -> None:
        self._classifier = classifier or RuleBasedClassifier()
        self._timeout = classifier_timeout

    async def pre_check(
        self,
        prompt: str,
        parameters: GenerationParameters | None = None,
    ) -> SafetyVerdict:
        parameters = parameters or GenerationParameters()
        concerns = evaluate_rules(prompt, "pre", parameters.safety_level)
        pii = pii_concerns(prompt, "pre")
        concerns.extend(pii)

        classified, inconclusive = await self._classify(prompt, "pre", parameters)
        concerns.extend(classified)

        return self._finish("pre", concerns, bool(pii), inconclusive)

    async def post_check(self, content: str, parameters: GenerationParameters) -> SafetyVerdict:
        concerns = evaluate_rules(content, "post", parameters.safety_level)
        pii = pii_concerns(content, "post")
        concerns.extend(pii)

        reading = reading_level_concern(content, parameters.age_band)
        if reading is not None:
            concerns.append(reading)

        classified, inconclusive = await self._classify(content, "post", parameters)
        concerns.extend(classified)

        return self._finish("post", concerns, bool(pii), inconclusive)

    async def _classify(
        self,
        text: str,
        stage: str,
        parameters: GenerationParameters,
    ) -> tuple[list[Concern], bool]:
        try:
            verdict = await asyncio.wait_for(
                self._classifier.classify(text, stage, parameters.safety_level),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Classifier %s timed out after %.1fs at %s stage",
                self._classifier.name, self._timeout, stage,
            )
            return [], True
        except Exception:
            logger.exception("Classifier %s failed at %s stage", self._classifier.name, stage)
            return [], True
        return list(verdict.concerns), verdict.inconclusive

    @staticmethod
    def _finish(
        stage: str,
        concerns: list[Concern],
        pii_detected: bool,
        inconclusive: bool,
    ) -> SafetyVerdict:
        verdict = SafetyVerdict.from_concerns(
            stage, concerns, pii_detected=pii_detected, inconclusive=inconclusive
        )
        safety_verdicts.labels(stage=stage, severity=verdict.max_severity.value).inc()
        if not verdict.passed:
            logger.info(
                "Safety %s-check flagged content",
                stage,
                extra={"_extra": {
                    "categories": verdict.categories,
                    "max_severity": verdict.max_severity.value,
                    "inconclusive": inconclusive,
                }},
            )
        return verdict

    async def close(self) -> None:
        await self._classifier.close()
