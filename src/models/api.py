"""
Pydantic models for API request/response validation and documentation.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from src.models.card import Confidence


# Request Models
class WorthGradingRequest(BaseModel):
    """Card to price across grades, plus the estimated grade distribution."""

    player: str = Field(..., description="Player name")
    year: Optional[str] = Field(None, description="Card year, e.g. '2018'")
    set_name: Optional[str] = Field(None, description="Set name, e.g. 'Prizm'")
    parallel: Optional[str] = Field(None, description="Parallel, e.g. 'Silver'")
    card_number: Optional[str] = Field(None, description="Card number without '#'")
    probabilities: Dict[str, Dict[str, float]] = Field(
        ..., description="Grade probabilities per grader: {'psa': {'10': .3, ...}, 'bgs': {...}}"
    )
    estimator_confidence: Confidence = Field(
        Confidence.medium, description="Confidence of the condition estimate"
    )
    fees: Optional[Dict[str, float]] = Field(
        None, description="Grading fee per grader; defaults are used when omitted"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "player": "Luka Doncic",
                "year": "2018",
                "set_name": "Prizm",
                "card_number": "280",
                "probabilities": {
                    "psa": {"10": 0.25, "9": 0.5, "8": 0.2, "7_or_lower": 0.05},
                    "bgs": {"9.5": 0.2, "9": 0.5, "8.5": 0.2, "8_or_lower": 0.1},
                },
                "estimator_confidence": "medium",
            }
        }


class IdentityNormalizeRequest(BaseModel):
    """Raw identification output to canonicalize."""

    signals: Union[Dict[str, Any], str] = Field(
        ..., description="Model-extracted attributes, or the raw model output text"
    )
    known_year: Optional[int] = Field(None, description="Year confirmed by the user")

    class Config:
        json_schema_extra = {
            "example": {
                "signals": {
                    "player": "Luka Doncic",
                    "set": "Prizm",
                    "year": 2018,
                    "parallel": "Silver",
                    "card_number": "#280",
                },
            }
        }


class CollectionUpdateRequest(BaseModel):
    """Editable collection fields. Identity changes reset the CMV to pending."""

    player_name: Optional[str] = None
    year: Optional[str] = None
    set_name: Optional[str] = None
    parallel_type: Optional[str] = None
    card_number: Optional[str] = None
    grade: Optional[str] = None
    purchase_price: Optional[float] = Field(None, ge=0)
    purchase_date: Optional[str] = None
    image_url: Optional[str] = None
    notes: Optional[str] = None


class WatchlistItemRequest(BaseModel):
    """Watchlist create/update body."""

    player_name: Optional[str] = Field(None, description="Player name (required on create)")
    year: Optional[str] = None
    set_name: Optional[str] = None
    parallel_type: Optional[str] = None
    card_number: Optional[str] = None
    grade: Optional[str] = None
    target_price: Optional[float] = Field(None, ge=0, description="Alert when value is at or below")
    estimated_cmv: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "player_name": "Victor Wembanyama",
                "year": "2023",
                "set_name": "Prizm",
                "grade": "PSA 10",
                "target_price": 450,
            }
        }


class AssistantAskRequest(BaseModel):
    question: str = Field(..., min_length=1, description="Question for the market assistant")


# Response Models
class CmvRecomputeResponse(BaseModel):
    """Outcome of a synchronous CMV recompute."""

    id: str = Field(..., description="Collection item id")
    cmv_status: str = Field(..., description="ready or failed")
    cmv_value: Optional[float] = Field(None, description="Computed value, if any")
    cmv_confidence: str = Field(..., description="high/medium/low/unavailable")
    source: str = Field(..., description="Cascade step that produced the value")
    duration_ms: int = Field(..., description="Compute time")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "6b1f0d0c-0000-4000-8000-000000000001",
                "cmv_status": "ready",
                "cmv_value": 412.5,
                "cmv_confidence": "high",
                "source": "exact",
                "duration_ms": 842,
            }
        }


class AssistantAskResponse(BaseModel):
    answer: str = Field(..., description="Assistant reply")
    context: Dict[str, Any] = Field(..., description="Snapshot the answer was grounded on")


class DeleteResponse(BaseModel):
    id: str
    deleted: bool


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: Union[str, Dict[str, Any]] = Field(..., description="Error message or object")
    timestamp: datetime = Field(
        default_factory=datetime.now, description="Error timestamp"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "detail": {"error": "Missing required filters", "missing": ["playerId"]},
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }


class SummaryResponse(BaseModel):
    summary: Dict[str, Any]
    top_performers: List[Dict[str, Any]]
    losers: List[Dict[str, Any]]
