"""Tests for prompt templates and assembly."""

import pytest

from storyforge.assets.analysis import AssetAnalysis
from storyforge.contracts.errors import ValidationError
from storyforge.contracts.models import AgeBand, GenerationParameters, Tone
from storyforge.prompts.assembler import (
    DEFAULT_TEMPLATE,
    STORY_SYSTEM_PROMPT,
    PromptAssembler,
    PromptTemplate,
    max_tokens_for,
)

from conftest import make_request

BEDTIME = PromptTemplate(
    template_id="bedtime",
    body="Write a {tone} bedtime story for ages {age_band} about {child_name} and {pet}. {prompt}",
)


class TestTemplates:

    def test_default_template_has_no_variables(self):
        assert DEFAULT_TEMPLATE.variables == set()

    def test_custom_template_variables(self):
        assert BEDTIME.variables == {"child_name", "pet"}

    def test_unknown_template_rejected(self):
        assembler = PromptAssembler()
        request = make_request(parameters=GenerationParameters(template_id="nope"))
        with pytest.raises(ValidationError):
            assembler.check(request)

    def test_missing_variables_listed(self):
        assembler = PromptAssembler([BEDTIME])
        request = make_request(
            parameters=GenerationParameters(template_id="bedtime", template_variables={"pet": "cat"})
        )
        with pytest.raises(ValidationError) as exc_info:
            assembler.check(request)
        assert exc_info.value.details["missing"] == ["child_name"]

    def test_malformed_template_fails_on_register(self):
        with pytest.raises(ValueError):
            PromptAssembler([PromptTemplate(template_id="bad", body="Hello {name")])


class TestAssemble:
    """Assembly fills standard slots and sizes the request from the age band."""

    def test_default_prompt(self):
        request = make_request(
            parameters=GenerationParameters(themes=("friendship",), vocabulary_focus=("Share",))
        )

        assembled = PromptAssembler().assemble(request)
        payload = assembled.llm_request

        assert assembled.template_id == "story"
        assert payload.system_prompt == STORY_SYSTEM_PROMPT
        assert "Target age: 6-8 year olds" in payload.prompt
        assert "Themes: friendship" in payload.prompt
        assert "Vocabulary to practice: share" in payload.prompt
        assert "User prompt: A bunny who learns to share carrots with friends" in payload.prompt
        assert payload.max_tokens == 1200
        assert payload.temperature == 0.7

    def test_empty_asset_section_collapsed(self):
        payload = PromptAssembler().assemble(make_request()).llm_request
        assert "\n\n\n" not in payload.prompt
        assert "provided pictures" not in payload.prompt

    def test_assets_included(self):
        analysis = AssetAnalysis(asset_id="a1", fingerprint="f", summary="An image showing a red kite")

        assembled = PromptAssembler().assemble(make_request(), [analysis])

        assert "An image showing a red kite" in assembled.llm_request.prompt
        assert assembled.analyses == [analysis]

    def test_user_text_excludes_instructions(self):
        request = make_request(parameters=GenerationParameters(themes=("space",)))

        assembled = PromptAssembler().assemble(request)

        assert assembled.user_text == "A bunny who learns to share carrots with friends\nspace"
        assert "Story requirements" not in assembled.user_text

    def test_custom_template(self):
        assembler = PromptAssembler([BEDTIME])
        request = make_request(
            "Keep it short and sweet please",
            parameters=GenerationParameters(
                template_id="bedtime",
                tone=Tone.CALMING,
                template_variables={"child_name": "Mia", "pet": "Biscuit"},
            ),
        )

        assembled = assembler.assemble(request)

        assert assembled.llm_request.prompt == (
            "Write a calming bedtime story for ages 6-8 about Mia and Biscuit. "
            "Keep it short and sweet please"
        )
        assert assembled.llm_request.temperature == 0.6
        assert "Mia" in assembled.user_text

    def test_max_tokens_scale_with_age(self):
        assert max_tokens_for(AgeBand.TODDLER, 5) == 525
        assert max_tokens_for(AgeBand.TEEN, 20) == 6300
