"""
Extraction Gateway Tests
========================

Transcript -> Accepted / Rejected / ParseError, with precinct-based region
derivation. The LLM and OpenAI clients are fakes.
"""
import asyncio
from types import SimpleNamespace

import pytest

from conftest import FakeLLM
from dispatch.errors import ExtractionFailure
from dispatch.models.domain import Accepted, ParseError, Rejected, UNKNOWN
from dispatch.services.extraction_gateway import (
    REJECT_NO_INCIDENT,
    REJECT_SERVICE_UNAVAILABLE,
    ExtractionGateway,
    build_system_prompt,
    normalize_candidate,
    parse_extraction,
)
from dispatch.services.llm_gateway import LLMGateway, extract_json_block
from dispatch.services.transcriber import SpeechToText


# ============================================================================
# FAKE OPENAI CLIENT
# ============================================================================

class FakeCompletions:

    def __init__(self, content=None, delay=0.0, error=None):
        self.content = content
        self.delay = delay
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(completions=None, transcriptions=None):
    return SimpleNamespace(
        chat=SimpleNamespace(completions=completions),
        audio=SimpleNamespace(transcriptions=transcriptions),
    )


class FakeTranscriptions:

    def __init__(self, text="Shots fired at 125th and Lenox"):
        self.text = text
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(text=self.text)


# ============================================================================
# TEST: JSON BLOCK EXTRACTION
# ============================================================================

class TestExtractJsonBlock:

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"hasIncident": true, "units": ["2A"]}\n```'
        assert extract_json_block(text) == {"hasIncident": True, "units": ["2A"]}

    def test_no_block(self):
        assert extract_json_block("I could not parse that") is None

    def test_invalid_json(self):
        assert extract_json_block("{hasIncident: yes}") is None

    def test_empty(self):
        assert extract_json_block(None) is None


# ============================================================================
# TEST: NORMALIZATION
# ============================================================================

class TestNormalizeCandidate:

    def test_precinct_fills_region_and_location(self, nyc):
        candidate = normalize_candidate(
            {"hasIncident": True, "incidentType": "Assault", "location": None,
             "borough": "Unknown", "precinctMentioned": "75"},
            nyc,
        )
        assert candidate.region == "Brooklyn"
        assert candidate.location == "75th Precinct area"

    def test_precinct_ordinal_suffix(self, nyc):
        candidate = normalize_candidate(
            {"incidentType": "Larceny", "precinctMentioned": "the 1st"}, nyc
        )
        assert candidate.region == "Manhattan"
        assert candidate.location == "1st Precinct area"

    def test_explicit_region_is_kept(self, nyc):
        candidate = normalize_candidate(
            {"incidentType": "Assault", "location": "Fulton St", "borough": "Queens",
             "precinctMentioned": "75"},
            nyc,
        )
        assert candidate.region == "Queens"
        assert candidate.location == "Fulton St"

    def test_location_kept_when_precinct_derives_region(self, nyc):
        candidate = normalize_candidate(
            {"incidentType": "Assault", "location": "Pennsylvania Ave", "precinctMentioned": "75"},
            nyc,
        )
        assert candidate.region == "Brooklyn"
        assert candidate.location == "Pennsylvania Ave"

    def test_missing_location_becomes_unknown(self, nyc):
        candidate = normalize_candidate({"incidentType": "Noise complaint"}, nyc)
        assert candidate.location == UNKNOWN
        assert candidate.region == UNKNOWN

    def test_unmapped_precinct_leaves_unknown(self, nyc):
        candidate = normalize_candidate({"incidentType": "Assault", "precinctMentioned": "999"}, nyc)
        assert candidate.region == UNKNOWN
        assert candidate.location == UNKNOWN

    def test_minneapolis_precinct_to_district(self, mpls):
        candidate = normalize_candidate({"incidentType": "Fire", "precinctMentioned": "3"}, mpls)
        assert candidate.region == mpls.precinct_to_region["3"]

    def test_bad_priority_defaults_to_medium(self, nyc):
        candidate = normalize_candidate({"incidentType": "Fire", "priority": "urgent"}, nyc)
        assert candidate.priority == "MEDIUM"


class TestSystemPrompt:

    def test_prompt_is_city_specific(self, nyc, mpls):
        assert "New York" in build_system_prompt(nyc)
        assert "Minneapolis" in build_system_prompt(mpls)
        assert "hasIncident" in build_system_prompt(mpls)


# ============================================================================
# TEST: GATEWAY OUTCOMES
# ============================================================================

class TestExtractionGateway:

    @pytest.mark.asyncio
    async def test_accepted(self, nyc):
        llm = FakeLLM([{
            "hasIncident": True, "incidentType": "Robbery", "location": "Flatbush Ave & Church Ave",
            "borough": "Brooklyn", "priority": "HIGH", "summary": "Gunpoint robbery", "isArrest": False,
        }])
        result = await ExtractionGateway(llm).extract("10-30 in progress Flatbush and Church", nyc)
        assert isinstance(result, Accepted)
        assert result.candidate.incident_type == "Robbery"
        assert result.candidate.priority == "HIGH"
        assert llm.requests[0]['label'] == "PARSE-nyc"

    @pytest.mark.asyncio
    async def test_no_incident(self, nyc):
        llm = FakeLLM([{"hasIncident": False}])
        result = await ExtractionGateway(llm).extract("radio check", nyc)
        assert result == Rejected(REJECT_NO_INCIDENT)

    @pytest.mark.asyncio
    async def test_service_unavailable(self, nyc):
        llm = FakeLLM([None])
        result = await ExtractionGateway(llm).extract("anything", nyc)
        assert result == Rejected(REJECT_SERVICE_UNAVAILABLE)

    @pytest.mark.asyncio
    async def test_parse_error(self, nyc):
        llm = FakeLLM(["Sorry, I can't help with that."])
        result = await ExtractionGateway(llm).extract("anything", nyc)
        assert isinstance(result, ParseError)
        assert "no JSON object" in result.detail

    def test_parse_extraction(self):
        assert parse_extraction('Here you go: {"hasIncident": false}') == {'hasIncident': False}
        with pytest.raises(ExtractionFailure):
            parse_extraction("Sorry, I can't help with that.")
        with pytest.raises(ExtractionFailure):
            parse_extraction('["not", "an", "object"]')


# ============================================================================
# TEST: OPENAI WRAPPERS
# ============================================================================

class TestLLMGateway:

    @pytest.mark.asyncio
    async def test_returns_stripped_content(self):
        completions = FakeCompletions(content="  hello  ")
        gateway = LLMGateway(fake_openai(completions), model="gpt-4o")
        assert await gateway.complete([{"role": "user", "content": "hi"}], max_tokens=10) == "hello"
        assert completions.kwargs['max_tokens'] == 10
        assert completions.kwargs['model'] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        gateway = LLMGateway(fake_openai(FakeCompletions(content="late", delay=1.0)), timeout=0.01)
        assert await gateway.complete([]) is None
        assert gateway.failures == 1

    @pytest.mark.asyncio
    async def test_api_error_returns_none(self):
        gateway = LLMGateway(fake_openai(FakeCompletions(error=RuntimeError("500"))))
        assert await gateway.complete([]) is None


class TestSpeechToText:

    @pytest.mark.asyncio
    async def test_vocabulary_hint_is_prompt(self, nyc):
        transcriptions = FakeTranscriptions()
        stt = SpeechToText(fake_openai(transcriptions=transcriptions))
        text = await stt.transcribe(b"\x00" * 6000, vocabulary_hint=nyc.vocabulary_hint)
        assert text == "Shots fired at 125th and Lenox"
        assert transcriptions.kwargs['prompt'] == nyc.vocabulary_hint
        assert transcriptions.kwargs['model'] == "whisper-1"

    @pytest.mark.asyncio
    async def test_no_hint_no_prompt(self):
        transcriptions = FakeTranscriptions()
        stt = SpeechToText(fake_openai(transcriptions=transcriptions))
        await stt.transcribe(b"\x00" * 6000)
        assert 'prompt' not in transcriptions.kwargs

    @pytest.mark.asyncio
    async def test_empty_audio(self):
        stt = SpeechToText(fake_openai(transcriptions=FakeTranscriptions()))
        assert await stt.transcribe(b"") is None
