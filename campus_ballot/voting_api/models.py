"""Pydantic models for request/response validation."""
import re
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from ..shared.models import Position


class SelectionIn(BaseModel):
    """One choice on a submitted ballot."""

    position: Position = Field(..., description="Contested position")
    candidate_id: str = Field(..., min_length=1, description="Candidate identifier")


class CastVoteRequest(BaseModel):
    """Ballot submission request model."""

    votes: List[SelectionIn] = Field(..., min_length=1, description="Ordered selections")

    class Config:
        json_schema_extra = {
            "example": {
                "votes": [
                    {"position": "President", "candidate_id": "3f1c9a..."},
                    {"position": "Treasurer", "candidate_id": "a8e02b..."}
                ]
            }
        }


class CastVoteResponse(BaseModel):
    """Ballot submission response model."""

    ballot_id: str = Field(..., description="Identifier of the stored ballot")
    timestamp: datetime = Field(..., description="When the ballot was recorded")
    message: str = Field(default="Vote cast successfully", description="Response message")


class VoteStatusResponse(BaseModel):
    has_voted: bool
    voted_at: Optional[datetime] = None


class RegisterRequest(BaseModel):
    """Student registration request model."""

    student_id: str = Field(..., description="Student identifier (6-12 letters or digits)")
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr = Field(..., description="Unique e-mail address")
    password: str = Field(..., min_length=6)
    department: str = Field(..., min_length=1)
    year: int = Field(..., ge=1, le=4)

    @field_validator("student_id")
    @classmethod
    def validate_student_id(cls, v):
        """Normalize to upper case and require 6-12 alphanumerics."""
        student_id = v.strip().upper()
        if not re.match(r'^[A-Z0-9]{6,12}$', student_id):
            raise ValueError("Student ID must be 6-12 letters or digits")
        return student_id

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v):
        return v.lower()

    @field_validator("name", "department")
    @classmethod
    def strip_text(cls, v):
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "student_id": "CS2024001",
                "name": "Ada Lovelace",
                "email": "ada@university.edu",
                "password": "secret123",
                "department": "Computer Science",
                "year": 2
            }
        }


class LoginRequest(BaseModel):
    """Login request model."""

    student_id: str
    password: str

    @field_validator("student_id")
    @classmethod
    def normalize_student_id(cls, v):
        return v.strip().upper()


class TokenResponse(BaseModel):
    """Issued bearer token with the authenticated user."""

    access_token: str
    token_type: str = "bearer"
    user: dict


class CandidateCreate(BaseModel):
    """Candidate creation request model."""

    name: str = Field(..., min_length=1)
    position: Position
    department: str = Field(..., min_length=1)
    year: int = Field(..., ge=1, le=4)
    manifesto: str = Field(..., min_length=1, max_length=500)
    photo_url: Optional[str] = None


class CandidateUpdate(BaseModel):
    """Candidate update request model. vote_count is accepted but never applied."""

    name: Optional[str] = Field(default=None, min_length=1)
    position: Optional[Position] = None
    department: Optional[str] = Field(default=None, min_length=1)
    year: Optional[int] = Field(default=None, ge=1, le=4)
    manifesto: Optional[str] = Field(default=None, max_length=500)
    photo_url: Optional[str] = None
    is_active: Optional[bool] = None
    vote_count: Optional[int] = None


class CandidateResponse(BaseModel):
    id: str
    name: str
    position: Position
    department: str
    year: int
    manifesto: str
    photo_url: str
    vote_count: int
    is_active: bool
    created_at: datetime


class ResultsResponse(BaseModel):
    """Election results response model."""

    results_by_position: Dict[str, List[dict]] = Field(
        ..., description="Position -> candidates ordered by vote count"
    )
    totals: dict = Field(
        ..., description="total_votes, total_users and turnout_percent"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "results_by_position": {
                    "President": [
                        {
                            "id": "3f1c9a...",
                            "name": "Ada Lovelace",
                            "department": "Computer Science",
                            "year": 3,
                            "vote_count": 152,
                            "manifesto": "Better labs",
                            "photo_url": "https://via.placeholder.com/150"
                        }
                    ]
                },
                "totals": {"total_votes": 300, "total_users": 420, "turnout_percent": 71.43}
            }
        }


class ReconcileResponse(BaseModel):
    candidates_corrected: int
    users_flagged: int


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Stable error code")
    message: str = Field(..., description="Error message")
    retryable: bool = Field(default=False, description="Whether the same request may be retried")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "already_voted",
                "message": "You have already voted. Each user can only vote once.",
                "retryable": False
            }
        }
