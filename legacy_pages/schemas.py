"""
Pydantic schemas for the legacy pages API.

Submitted records are validated from the camelCase multipart field names;
responses are serialised with camelCase keys.
"""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

RELATIONSHIP_TYPES = (
    "Child of",
    "Daughter of",
    "Son of",
    "Grandchild of",
    "Nibling of",
    "Sibling of",
    "Spouse of",
    "Parent of",
    "Friend of",
    "Other",
)

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class PageType(str, Enum):
    AUTOBIOGRAPHY = "autobiography"
    BIOGRAPHY = "biography"
    MEMORIAL = "memorial"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


OptionalText = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
OptionalDate = Annotated[Optional[dt.date], BeforeValidator(_blank_to_none)]


@dataclass
class FileUpload:
    """A file part read from the multipart body."""

    filename: str
    content_type: str
    data: bytes


class SubmittedModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        arbitrary_types_allowed=True,
    )


class PageFields(SubmittedModel):
    page_type: PageType
    slug: str = Field(..., min_length=1, max_length=120)
    honouree_name: str = Field(..., min_length=1, max_length=200)
    date_of_birth: dt.date
    date_of_passing: OptionalDate = None
    creator_name: str = ""
    relationship: str = ""
    story: str = ""

    @field_validator("slug")
    @classmethod
    def check_slug(cls, value: str) -> str:
        value = value.lower()
        if not SLUG_PATTERN.match(value):
            raise ValueError(
                "may only contain lowercase letters, numbers and single hyphens"
            )
        return value


class GeneralKnowledgeIn(SubmittedModel):
    personality: OptionalText = None
    values: OptionalText = None
    beliefs: OptionalText = None

    def is_empty(self) -> bool:
        return not any((self.personality, self.values, self.beliefs))


class MediaItemIn(SubmittedModel):
    type: MediaType
    date_taken: dt.date
    location: OptionalText = None
    description: OptionalText = None
    # Either a new upload or the url of one of the page's existing items.
    file: Optional[FileUpload] = None
    url: OptionalText = None


class EventIn(SubmittedModel):
    name: str = Field(..., min_length=1)
    date: dt.date
    time: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    rsvp_by: OptionalDate = None
    description: OptionalText = None
    message: OptionalText = None


class RelationshipIn(SubmittedModel):
    type: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class InsightIn(SubmittedModel):
    message: str = Field(..., min_length=1)


class GatheringIn(SubmittedModel):
    date: OptionalDate = None
    time: OptionalText = None
    location: OptionalText = None
    notes: OptionalText = None


class RestingPlaceIn(SubmittedModel):
    name: OptionalText = None
    location: OptionalText = None
    plot: OptionalText = None
    notes: OptionalText = None


class MemorialDetailsIn(SubmittedModel):
    funeral: GatheringIn = Field(default_factory=GatheringIn)
    service: GatheringIn = Field(default_factory=GatheringIn)
    viewing: GatheringIn = Field(default_factory=GatheringIn)
    procession: GatheringIn = Field(default_factory=GatheringIn)
    resting_place: RestingPlaceIn = Field(default_factory=RestingPlaceIn)
    eulogy: OptionalText = None
    tribute: OptionalText = None


@dataclass
class PageSubmission:
    """
    A parsed create/edit submission.

    Collections that were not part of the submission are None.
    """

    fields: PageFields
    general_knowledge: GeneralKnowledgeIn
    memorial_details: Optional[MemorialDetailsIn] = None
    cover_photo: Optional[FileUpload] = None
    honouree_photo: Optional[FileUpload] = None
    media_items: Optional[list[MediaItemIn]] = None
    events: Optional[list[EventIn]] = None
    relationships: Optional[list[RelationshipIn]] = None
    insights: Optional[list[InsightIn]] = None


class ResponseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserResponse(ResponseModel):
    id: str
    name: str
    email: str


class GeneralKnowledgeResponse(ResponseModel):
    id: str
    legacy_page_id: str
    personality: Optional[str] = None
    values: Optional[str] = None
    beliefs: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class MemorialDetailsResponse(ResponseModel):
    id: str
    legacy_page_id: str
    funeral: dict
    service: dict
    viewing: dict
    procession: dict
    resting_place: dict
    eulogy: Optional[str] = None
    tribute: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class MediaItemResponse(ResponseModel):
    id: str
    legacy_page_id: str
    type: str
    url: str
    date_taken: dt.date
    location: Optional[str] = None
    description: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class EventResponse(ResponseModel):
    id: str
    legacy_page_id: str
    name: str
    date: dt.date
    time: str
    rsvp_by: Optional[dt.date] = None
    location: str
    description: Optional[str] = None
    message: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class RelationshipResponse(ResponseModel):
    id: str
    legacy_page_id: str
    type: str
    name: str
    created_at: dt.datetime
    updated_at: dt.datetime


class InsightResponse(ResponseModel):
    id: str
    legacy_page_id: str
    message: str
    created_at: dt.datetime
    updated_at: dt.datetime


class PageResponse(ResponseModel):
    id: str
    user_id: str
    page_type: str
    slug: str
    honouree_name: str
    date_of_birth: dt.date
    date_of_passing: Optional[dt.date] = None
    creator_name: str
    relationship: str
    story: str
    cover_photo: Optional[str] = None
    honouree_photo: Optional[str] = None
    status: str
    created_at: dt.datetime
    updated_at: dt.datetime

    @classmethod
    def from_record(cls, page) -> "PageResponse":
        return cls.model_validate(asdict(page))


class PageDetailResponse(PageResponse):
    general_knowledge: Optional[GeneralKnowledgeResponse] = None
    memorial_details: Optional[MemorialDetailsResponse] = None
    media_items: list[MediaItemResponse] = Field(default_factory=list)
    events: list[EventResponse] = Field(default_factory=list)
    relationships: list[RelationshipResponse] = Field(default_factory=list)
    insights: list[InsightResponse] = Field(default_factory=list)

    @classmethod
    def from_aggregate(cls, aggregate) -> "PageDetailResponse":
        data = asdict(aggregate)
        page = data.pop("page")
        return cls.model_validate({**page, **data})


class OwnPageResponse(ResponseModel):
    page: Optional[PageResponse] = None


class OwnPageDetailResponse(ResponseModel):
    page: Optional[PageDetailResponse] = None


class PageIdResponse(ResponseModel):
    id: str


class DeletePageResponse(ResponseModel):
    success: bool


class IdentityEmailAddress(BaseModel):
    email_address: str


class IdentityUserData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email_addresses: list[IdentityEmailAddress] = Field(default_factory=list)
    first_name: Optional[str] = None


class IdentityEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: dict
