from datetime import datetime
from enum import Enum
from typing import Optional, List, Tuple

from pydantic import BaseModel, field_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    linked_id: Optional[int] = None
    link_precedence: LinkPrecedence
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        # older first; equal timestamps fall back to the lower id
        return (self.created_at, self.id)


def _number_to_str(value):
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def coerce_phone(cls, value):
        return _number_to_str(value)


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class AddContactRequest(BaseModel):
    id: Optional[int] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY
    createdAt: Optional[datetime] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def coerce_phone(cls, value):
        return _number_to_str(value)


class HealthResponse(BaseModel):
    status: str
    timeStamp: str
    service: str
