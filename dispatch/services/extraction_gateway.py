"""
Extraction Gateway - transcript text -> structured incident

Asks the language model for a JSON incident description, then normalizes it
against the city profile. The result is always one of:

- Accepted(candidate)            an incident was found
- Rejected("no_incident")        routine chatter, nothing to record
- Rejected("service_unavailable") timeout / network / API error
- ParseError(detail)             the model answered but not with usable JSON

Never raises: callers skip the transcript on anything but Accepted.
"""
import logging
from typing import Any, Optional

from dispatch.config.cities import CityProfile
from dispatch.errors import ExtractionFailure
from dispatch.models.domain import (
    Accepted,
    Rejected,
    ParseError,
    ExtractionResult,
    IncidentCandidate,
    UNKNOWN,
)
from dispatch.services.llm_gateway import LLMGateway, extract_json_block

logger = logging.getLogger(__name__)

PRIORITIES = ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')

REJECT_NO_INCIDENT = 'no_incident'
REJECT_SERVICE_UNAVAILABLE = 'service_unavailable'

ARREST_RULES = """ARREST DETECTION:
Look for keywords: "under arrest", "in custody", "collar", "perp", "prisoner", "apprehended", "cuffed"
Set isArrest: true if arrest-related"""


def build_system_prompt(profile: CityProfile) -> str:
    """Per-city parser prompt: location rules, precinct table, output schema."""
    regions = '/'.join(profile.regions + (UNKNOWN,))
    landmarks = ', '.join(profile.landmarks[:12])
    return f"""You are an expert {profile.name} police radio parser. Your PRIMARY job is to extract LOCATION information.

{profile.parser_rules}

Known landmarks: {landmarks}

If NO location can be determined, set location to null (not "Unknown").

{ARREST_RULES}

Respond ONLY with valid JSON:
{{
  "hasIncident": boolean,
  "incidentType": "string describing incident",
  "location": "specific location or null if none found",
  "borough": "{regions}",
  "units": ["unit IDs mentioned"],
  "priority": "CRITICAL/HIGH/MEDIUM/LOW",
  "summary": "brief summary",
  "rawCodes": ["any 10-codes heard"],
  "precinctMentioned": "number or null",
  "isArrest": boolean
}}"""


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() in ('null', 'none', 'unknown'):
        return None
    return value


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
    return f"{n}{suffix}"


def normalize_candidate(parsed: dict, profile: CityProfile) -> IncidentCandidate:
    """
    Apply precinct -> region derivation and fill defaults.

    A mentioned precinct fills a missing region; if the location is also
    missing it becomes "<n>th Precinct area". A missing location ends up as
    "Unknown".
    """
    location = _text(parsed.get('location'))
    region = _text(parsed.get('borough') or parsed.get('region'))
    precinct = _text(parsed.get('precinctMentioned'))

    if precinct and not region:
        derived = profile.region_for_precinct(precinct)
        if derived:
            region = derived
            if not location:
                digits = ''.join(ch for ch in precinct if ch.isdigit())
                location = f"{_ordinal(int(digits))} Precinct area"

    priority = str(parsed.get('priority') or 'MEDIUM').upper()
    if priority not in PRIORITIES:
        priority = 'MEDIUM'

    units = parsed.get('units') or []
    if not isinstance(units, list):
        units = [units]

    return IncidentCandidate(
        incident_type=_text(parsed.get('incidentType')) or 'Unknown incident',
        location=location or UNKNOWN,
        region=region or UNKNOWN,
        priority=priority,
        summary=str(parsed.get('summary') or '').strip(),
        is_arrest=bool(parsed.get('isArrest')),
        units=[str(u) for u in units if u],
        precinct=precinct,
    )


def parse_extraction(text: str) -> dict:
    """Model reply -> parsed JSON object; raises ExtractionFailure if there is none"""
    parsed = extract_json_block(text)
    if not isinstance(parsed, dict):
        raise ExtractionFailure(f"no JSON object in response: {text[:120]}")
    return parsed


class ExtractionGateway:
    """Bounded transcript understanding call"""

    def __init__(self, llm: LLMGateway, timeout: float = 30.0, max_tokens: int = 800):
        self.llm = llm
        self.timeout = timeout
        self.max_tokens = max_tokens

    async def extract(self, transcript: str, profile: CityProfile) -> ExtractionResult:
        messages = [
            {"role": "system", "content": build_system_prompt(profile)},
            {"role": "user", "content": f'Parse this {profile.short_name} radio transmission:\n\n"{transcript}"'},
        ]
        text = await self.llm.complete(
            messages,
            max_tokens=self.max_tokens,
            temperature=0.0,
            timeout=self.timeout,
            label=f"PARSE-{profile.id}",
        )
        if text is None:
            return Rejected(REJECT_SERVICE_UNAVAILABLE)

        try:
            parsed = parse_extraction(text)
        except ExtractionFailure as e:
            logger.info(f"[PARSE-{profile.id}] unparseable response: {text[:120]!r}")
            return ParseError(str(e))

        if not parsed.get('hasIncident'):
            return Rejected(REJECT_NO_INCIDENT)

        return Accepted(normalize_candidate(parsed, profile))
