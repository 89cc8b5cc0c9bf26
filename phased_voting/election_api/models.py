"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from phased_voting.shared.models import ElectionView, Phase
from phased_voting.election_api.shortlist import eligible_candidates, final_standings


class LoginRequest(BaseModel):
    """Voter login request model."""

    externalId: str = Field(..., description="Admission number")
    secret: str = Field(..., description="Roll number")

    @field_validator("externalId", "secret")
    @classmethod
    def strip_value(cls, v):
        """Reject blank identifiers."""
        if not v or not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "externalId": "240433",
                "secret": "B24CSA01"
            }
        }


class ParticipantOut(BaseModel):
    """Participant as shown to clients."""

    id: str
    externalId: str
    displayName: str
    roundOneVotes: int = 0
    roundTwoVotes: int = 0
    hasVotedRoundOne: bool = False
    hasVotedRoundTwo: bool = False


class LoginResponse(BaseModel):
    """Login response model."""

    token: str = Field(..., description="Bearer token for this session")
    participant: ParticipantOut


class VoteRequest(BaseModel):
    """Ballot submission request model."""

    candidateId: str = Field(..., description="Participant id of the chosen candidate")
    phase: Optional[Phase] = Field(None, description="Round the ballot is meant for; defaults to the open round")

    @field_validator("candidateId")
    @classmethod
    def validate_candidate_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Candidate ID cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "candidateId": "240433"
            }
        }


class VoteResponse(BaseModel):
    """Ballot submission response model."""

    status: Literal["accepted"] = "accepted"
    message: str = Field(default="Vote Casted Successfully!")
    phase: Phase
    candidateId: str
    castAt: str


class FinalStandingsOut(BaseModel):
    winner: Optional[ParticipantOut] = None
    runnersUp: List[ParticipantOut] = Field(default_factory=list)


class ElectionStateResponse(BaseModel):
    """Consolidated election view."""

    phase: Phase
    roster: List[ParticipantOut]
    shortlist: List[ParticipantOut] = Field(..., description="Top candidates by round one votes")
    candidates: List[ParticipantOut] = Field(..., description="Candidates a ballot may name now")
    final: Optional[FinalStandingsOut] = Field(None, description="Set once results are declared")
    you: Optional[ParticipantOut] = Field(None, description="The session's own participant record")


class PhaseResponse(BaseModel):
    phase: Phase
    message: str


class SeedEntry(BaseModel):
    externalId: str
    secret: str
    displayName: str


class ResetRequest(BaseModel):
    """Destructive reset; confirm must be true."""

    confirm: bool = False
    roster: Optional[List[SeedEntry]] = Field(None, description="Overrides the configured roster seed")


class ResetResponse(BaseModel):
    phase: Phase
    participants: int


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "services": {
                    "record_store": "connected"
                },
                "timestamp": "2024-01-15T10:30:00"
            }
        }


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "already_voted",
                "message": "You have already voted in Round 1",
                "details": {}
            }
        }


def view_payload(view: ElectionView, voter_id: Optional[str] = None) -> dict:
    """
    Client payload for a view. Credentials are stripped; the final standings
    are included only once results are declared.
    """
    final = None
    if view.phase is Phase.FINAL_DECLARED:
        final = final_standings(view.shortlist).to_dict()

    you = None
    if voter_id is not None:
        participant = view.find(voter_id)
        you = participant.to_public_dict() if participant else None

    return {
        "phase": view.phase.value,
        "roster": [p.to_public_dict() for p in view.roster],
        "shortlist": [p.to_public_dict() for p in view.shortlist],
        "candidates": [p.to_public_dict() for p in eligible_candidates(view.phase, view.roster, view.shortlist)],
        "final": final,
        "you": you,
    }
