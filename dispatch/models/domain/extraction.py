"""
Tagged extraction results

Every call site of ExtractionGateway.extract must handle all three:

    result = await gateway.extract(text, profile)
    if isinstance(result, Accepted):
        ...
    elif isinstance(result, Rejected):
        ...
    elif isinstance(result, ParseError):
        ...
"""
from dataclasses import dataclass
from typing import Union

from dispatch.models.domain.incident import IncidentCandidate


@dataclass(frozen=True)
class Accepted:
    candidate: IncidentCandidate


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class ParseError:
    detail: str


ExtractionResult = Union[Accepted, Rejected, ParseError]
