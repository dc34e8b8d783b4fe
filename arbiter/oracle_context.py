"""
Module: arbiter/oracle_context.py
Description: Oracle responses consumed from the oracle subsystem

Responses are a tagged union keyed by ``oracle_type``. Every variant shares
the minimal contract (oracle_id, success, data, timestamp) and decides for
itself whether it attests milestone completion.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class BaseOracleResponse(BaseModel):
    """Fields every oracle response carries."""
    model_config = ConfigDict(frozen=True)

    oracle_id: str = Field(..., min_length=1)
    success: bool
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    def indicates_completion(self) -> bool:
        return self.success


class AttestationResponse(BaseOracleResponse):
    """Signed attestation by a trusted party."""
    oracle_type: Literal["attestation"] = "attestation"

    def indicates_completion(self) -> bool:
        return self.success and bool(self.data.get("attested", True))


class ApiResponse(BaseOracleResponse):
    """Result of querying a third-party API (GitHub, Strava, race timing...)."""
    oracle_type: Literal["api"] = "api"

    def indicates_completion(self) -> bool:
        return self.success and bool(self.data.get("verified", True))


class AggregatorResponse(BaseOracleResponse):
    """Pre-aggregated answer from several upstream sources."""
    oracle_type: Literal["aggregator"] = "aggregator"

    def indicates_completion(self) -> bool:
        return self.success and bool(self.data.get("consensus_reached", True))


OracleResponse = Annotated[
    Union[AttestationResponse, ApiResponse, AggregatorResponse],
    Field(discriminator="oracle_type"),
]

_response_adapter = TypeAdapter(OracleResponse)
_response_list_adapter = TypeAdapter(List[OracleResponse])


def parse_oracle_response(payload: Dict[str, Any]) -> BaseOracleResponse:
    """Parse one raw payload into the matching response variant."""
    return _response_adapter.validate_python(payload)


def parse_oracle_responses(payloads: List[Dict[str, Any]]) -> List[BaseOracleResponse]:
    return _response_list_adapter.validate_python(payloads)


def compute_consensus(
    responses: List[BaseOracleResponse]
) -> Tuple[Optional[float], Optional[bool]]:
    """
    Measure how far the oracles agree.

    Returns:
        (consensus_percent, completed) where consensus_percent is the share of
        responses agreeing with the majority verdict and completed is that
        verdict. Both are None when there are no responses. An even split
        resolves to "not completed".
    """
    if not responses:
        return None, None

    completed_count = sum(1 for r in responses if r.indicates_completion())
    failed_count = len(responses) - completed_count

    completed = completed_count > failed_count
    agreeing = completed_count if completed else failed_count
    return agreeing * 100.0 / len(responses), completed
