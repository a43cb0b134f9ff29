"""
Prompt assembly for story generation.

A template is a str.format body. Standard slots ({prompt}, {age_band},
{tone}, ...) are filled from the request; any other slot is a template
variable the requester must supply. The assembler also returns the
user-supplied text on its own so the pre-generation safety check judges
what the requester wrote, not our instructions around it.
"""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass, field

from storyforge.assets.analysis import AssetAnalysis
from storyforge.contracts.errors import ValidationError
from storyforge.contracts.models import AgeBand, GenerationRequest, Tone
from storyforge.llm_adapter.models import LLMRequest

logger = logging.getLogger(__name__)

STORY_SYSTEM_PROMPT = (
    "You are a creative children's story writer specializing in age-appropriate, "
    "educational and engaging stories. You never include content unsuitable for "
    "the stated age."
)

STORY_PROMPT = """Create a complete children's story with the following requirements:
- Target age: {age_band} year olds
- Length: {target_pages} pages
- Tone: {tone}
- Themes: {themes}
- Vocabulary to practice: {vocabulary}
- Content safety: {safety_level} level

{assets}

Reading guidance for this age: {reading_guidance}

Story requirements:
1. Age-appropriate vocabulary and themes
2. Clear story structure with beginning, middle, and end
3. Positive moral lesson or educational value
4. Engaging characters children can relate to
5. One short paragraph per page, separated by blank lines

User prompt: {prompt}

Format the story with a title line, then the pages."""

STANDARD_SLOTS = frozenset(
    {
        "prompt",
        "age_band",
        "target_pages",
        "tone",
        "themes",
        "vocabulary",
        "safety_level",
        "assets",
        "reading_guidance",
    }
)

READING_GUIDANCE: dict[AgeBand, str] = {
    AgeBand.TODDLER: "very short sentences of five to eight words, simple everyday words, lots of repetition",
    AgeBand.EARLY: "short sentences, familiar words, introduce at most one or two new words per page",
    AgeBand.MIDDLE: "varied sentence length, richer vocabulary explained through context",
    AgeBand.TEEN: "natural prose with complex sentences and nuanced characters",
}

WORDS_PER_PAGE: dict[AgeBand, int] = {
    AgeBand.TODDLER: 30,
    AgeBand.EARLY: 60,
    AgeBand.MIDDLE: 120,
    AgeBand.TEEN: 200,
}

TONE_TEMPERATURE: dict[Tone, float] = {
    Tone.FRIENDLY: 0.7,
    Tone.ADVENTUROUS: 0.85,
    Tone.EDUCATIONAL: 0.5,
    Tone.CALMING: 0.6,
    Tone.EXCITING: 0.9,
}

TOKENS_PER_WORD = 1.5
TITLE_TOKEN_ALLOWANCE = 300


@dataclass(frozen=True)
class PromptTemplate:
    template_id: str
    body: str
    system_prompt: str = STORY_SYSTEM_PROMPT
    description: str = ""

    @property
    def slots(self) -> set[str]:
        return {name for _, name, _, _ in string.Formatter().parse(self.body) if name}

    @property
    def variables(self) -> set[str]:
        """Slots the requester has to fill through template_variables."""
        return self.slots - STANDARD_SLOTS


DEFAULT_TEMPLATE = PromptTemplate(
    template_id="story",
    body=STORY_PROMPT,
    description="General-purpose illustrated story",
)


@dataclass
class AssembledPrompt:
    llm_request: LLMRequest
    user_text: str
    template_id: str
    analyses: list[AssetAnalysis] = field(default_factory=list)


def max_tokens_for(age_band: AgeBand, target_pages: int) -> int:
    return int(target_pages * WORDS_PER_PAGE[age_band] * TOKENS_PER_WORD) + TITLE_TOKEN_ALLOWANCE


class PromptAssembler:

    def __init__(self, templates: list[PromptTemplate] | None = None) -> None:
        self._templates: dict[str, PromptTemplate] = {DEFAULT_TEMPLATE.template_id: DEFAULT_TEMPLATE}
        for template in templates or []:
            self.register(template)

    def register(self, template: PromptTemplate) -> None:
        # Validates the body parses; a stray brace fails here, not per request
        _ = template.slots
        self._templates[template.template_id] = template
        logger.info(
            "Registered prompt template %s (variables: %s)",
            template.template_id, ", ".join(sorted(template.variables)) or "none",
        )

    def template(self, template_id: str | None) -> PromptTemplate:
        if template_id is None:
            return DEFAULT_TEMPLATE
        template = self._templates.get(template_id)
        if template is None:
            raise ValidationError(f"Unknown template '{template_id}'", template_id=template_id)
        return template

    def check(self, request: GenerationRequest) -> PromptTemplate:
        """Validate template id and variables without building the prompt."""
        params = request.parameters
        template = self.template(params.template_id)
        missing = sorted(template.variables - set(params.template_variables))
        if missing:
            raise ValidationError(
                f"Missing template variables: {', '.join(missing)}",
                template_id=template.template_id,
                missing=missing,
            )
        return template

    def assemble(
        self,
        request: GenerationRequest,
        analyses: list[AssetAnalysis] | None = None,
    ) -> AssembledPrompt:
        template = self.check(request)
        params = request.parameters
        analyses = analyses or []

        if analyses:
            assets = "Include these characters and elements from the provided pictures: " + "; ".join(
                a.summary for a in analyses
            )
        else:
            assets = ""

        values = {
            "prompt": request.prompt.strip(),
            "age_band": params.age_band.value,
            "target_pages": params.target_pages,
            "tone": params.tone.value,
            "themes": ", ".join(params.themes) or "adventure and learning",
            "vocabulary": ", ".join(params.vocabulary_focus) or "none in particular",
            "safety_level": params.safety_level.value,
            "assets": assets,
            "reading_guidance": READING_GUIDANCE[params.age_band],
        }
        for name in template.variables:
            values[name] = params.template_variables[name]

        body = template.body.format(**values)
        # Collapse the gap left by an empty assets section
        body = "\n\n".join(part.strip() for part in body.split("\n\n") if part.strip())

        user_parts = [request.prompt.strip(), *params.themes, *params.vocabulary_focus]
        user_parts.extend(params.template_variables[name] for name in sorted(template.variables))
        user_parts.extend(a.summary for a in analyses)

        return AssembledPrompt(
            llm_request=LLMRequest(
                prompt=body,
                system_prompt=template.system_prompt,
                temperature=TONE_TEMPERATURE[params.tone],
                max_tokens=max_tokens_for(params.age_band, params.target_pages),
            ),
            user_text="\n".join(user_parts),
            template_id=template.template_id,
            analyses=analyses,
        )
