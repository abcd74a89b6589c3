from datetime import date, datetime
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from circdesk.models import ActivityType, NotificationType, SubscriberStatus

class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

# Envelope

class Request(BaseModel):
    command: str
    payload: Any = None

class Response(BaseModel):
    command: str
    payload: Any = None

# Request payloads

class BorrowIn(WireModel):
    book_id: int
    subscriber_id: int
    librarian_id: int = 0

class ReturnIn(WireModel):
    book_id: int
    subscriber_id: int
    librarian_id: int = 0
    is_lost: bool = False

class ExtendIn(WireModel):
    subscriber_id: int
    book_id: int
    librarian_id: int = 0

class ReserveIn(WireModel):
    subscriber_id: int
    book_id: int

class SubscriberIn(WireModel):
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None

class BookIn(WireModel):
    title: str
    author: Optional[str] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    shelf_location: Optional[str] = None
    total_copies: int = Field(default=1, ge=0)

class BookRef(WireModel):
    book_id: int

class SubscriberRef(WireModel):
    subscriber_id: int

class SearchIn(WireModel):
    field: Literal["title", "author", "subject", "description"]
    term: str

class ActivityFilterIn(WireModel):
    subscriber_id: Optional[int] = None
    librarian_id: Optional[int] = None

class NotificationIdsIn(WireModel):
    notification_ids: List[int]

class LookbackIn(WireModel):
    days: int = Field(default=30, ge=1, le=3650)

# Response DTOs

class SubscriberOut(WireModel):
    id: int
    full_name: str
    email: Optional[str]
    phone: Optional[str]
    status: SubscriberStatus

class BookOut(WireModel):
    id: int
    title: str
    author: Optional[str]
    subject: Optional[str]
    description: Optional[str]
    shelf_location: Optional[str]
    total_copies: int
    available_copies: int

class ActivityLogOut(WireModel):
    id: int
    subscriber_id: Optional[int]
    librarian_id: Optional[int]
    book_id: Optional[int]
    activity_type: ActivityType
    activity_date: datetime
    message: str

class NotificationOut(WireModel):
    id: int
    subscriber_id: Optional[int]
    message: str
    created_at: datetime
    type: NotificationType

class BorrowHistoryItem(WireModel):
    loan_id: int
    book_id: int
    title: str
    subscriber_id: int
    loan_date: date
    due_date: date
    actual_return_date: Optional[date]
