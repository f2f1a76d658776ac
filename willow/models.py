"""
willow/models.py — Pydantic models for the Willow intake flow.

Covers:
- Conversation service request/response bodies
- Directive: the structured payload embedded in each streamed reply
- IntakeSnapshot: the cumulative extraction result for one session
- Turn: one transcript entry
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator

#: Scalar snapshot fields, overwritten by the latest non-null value.
SCALAR_FIELDS = ("identity_name", "age", "city", "state")
#: Set-valued snapshot fields, which only ever grow.
SET_FIELDS = ("medications", "conditions", "allergies", "helpers")


# ---------------------------------------------------------------------------
# Conversation service bodies
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """A single message in the conversation sent to the model."""

    role: Literal["user", "assistant"]
    content: str


class OnboardingRequest(BaseModel):
    """Body of ``POST /ai/onboarding``. ``messages`` is the full prior turn list."""

    messages: Optional[List[ChatMessage]] = None


class ExtractRequest(BaseModel):
    """Body of ``POST /ai/extract``: the whole transcript to re-extract from."""

    messages: Optional[List[ChatMessage]] = None


class ExtractResponse(BaseModel):
    extracted: Dict[str, Any]


class StatusResponse(BaseModel):
    status: str = "ok"
    conversation_model: str = ""
    version: str = "1.0.0"


# ---------------------------------------------------------------------------
# Directive — structured payload the model appends to every reply
# ---------------------------------------------------------------------------


def _clean_scalar(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _clean_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, list):
        return [v.strip() if isinstance(v, str) else v for v in value if not (isinstance(v, str) and not v.strip())]
    return value


class Directive(BaseModel):
    """Facts the model reports as known so far.

    Accepts the wire keys ``recipient_name`` / ``family_members`` as well as the
    attribute names. Unknown keys are ignored; ``null`` lists read as empty and
    blank strings read as ``null``.
    """

    identity_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recipient_name", "identity_name")
    )
    age: Optional[Union[int, float]] = None
    city: Optional[str] = None
    state: Optional[str] = None
    medications: List[str] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)
    helpers: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("family_members", "helpers")
    )

    model_config = {"extra": "ignore"}

    @field_validator("identity_name", "city", "state", mode="before")
    @classmethod
    def _blank_is_null(cls, value: Any) -> Any:
        return _clean_scalar(value)

    @field_validator("medications", "conditions", "allergies", "helpers", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any) -> Any:
        return _clean_list(value)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with the wire key names used inside ``<extract>`` blocks."""
        return {
            "recipient_name": self.identity_name,
            "age": self.age,
            "city": self.city,
            "state": self.state,
            "medications": list(self.medications),
            "conditions": list(self.conditions),
            "allergies": list(self.allergies),
            "family_members": list(self.helpers),
        }


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class IntakeSnapshot(BaseModel):
    """Cumulative extracted facts for one intake session.

    Set fields are kept as insertion-ordered lists without duplicates.
    """

    identity_name: Optional[str] = None
    age: Optional[Union[int, float]] = None
    city: Optional[str] = None
    state: Optional[str] = None
    medications: List[str] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)
    helpers: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class Turn(BaseModel):
    """One exchange unit of the transcript."""

    role: Literal["user", "assistant"]
    content: str = ""
    in_progress: bool = False

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}
