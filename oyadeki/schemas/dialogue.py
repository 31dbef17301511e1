from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

MediaType = Literal["movie", "tv_show", "anime", "sports", "music", "book", "other"]


class MediaCandidate(BaseModel):
    kind: Literal["media"] = "media"
    media_type: MediaType = "other"
    title: str
    subtitle: Optional[str] = None
    artist_or_cast: Optional[str] = None
    year: Optional[int] = None
    trivia: Optional[str] = None
    # Filled by enrichment
    identified_title: Optional[str] = None
    poster_url: Optional[str] = None
    synopsis: Optional[str] = None
    score: Optional[float] = None
    genres: Optional[list[str]] = None
    external_url: Optional[str] = None
    external_source: Optional[str] = None

    @field_validator("media_type", mode="before")
    @classmethod
    def _unknown_media_type_is_other(cls, value: Any) -> Any:
        allowed = {"movie", "tv_show", "anime", "sports", "music", "book", "other"}
        return value if value in allowed else "other"

    @field_validator("year", mode="before")
    @classmethod
    def _zero_year_is_unknown(cls, value: Any) -> Any:
        if value in (0, "0", ""):
            return None
        return value


class Listing(BaseModel):
    title: str
    description: str
    category: Optional[str] = None
    condition: Optional[str] = None


class ProductCandidate(BaseModel):
    kind: Literal["product"] = "product"
    attributes: dict[str, Any] = Field(default_factory=dict)
    listing: Optional[Listing] = None


Candidate = Annotated[Union[MediaCandidate, ProductCandidate], Field(discriminator="kind")]
candidate_adapter: TypeAdapter = TypeAdapter(Candidate)


def load_candidate(raw: Optional[dict]) -> Optional[Union[MediaCandidate, ProductCandidate]]:
    if not raw:
        return None
    return candidate_adapter.validate_python(raw)


def dump_candidate(candidate: Optional[Union[MediaCandidate, ProductCandidate]]) -> Optional[dict]:
    if candidate is None:
        return None
    return candidate.model_dump(mode="json", exclude_none=True)


class FollowUp(BaseModel):
    """Capability asks another question; the candidate stays internal."""

    outcome: Literal["follow_up"] = "follow_up"
    visual_summary: str
    question: str
    candidate: Optional[Union[MediaCandidate, ProductCandidate]] = None


class Finalized(BaseModel):
    """Capability is confident the reply settles the identification."""

    outcome: Literal["finalized"] = "finalized"
    candidate: Union[MediaCandidate, ProductCandidate]


IdentificationStep = Union[FollowUp, Finalized]


class ImageInput(BaseModel):
    data: bytes
    mime_type: str = "image/jpeg"


class DialogueReply(BaseModel):
    """What the webhook layer should deliver for one inbound event."""

    handled: bool
    messages: list[str] = Field(default_factory=list)
    session_id: Optional[str] = None
    status: Optional[str] = None
    kind: Optional[str] = None
    error_code: Optional[str] = None
    media_log_id: Optional[str] = None

    @classmethod
    def declined(cls) -> "DialogueReply":
        return cls(handled=False)
