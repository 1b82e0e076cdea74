from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

MembershipStatus = Literal["active", "left", "removed"]
EventStatus = Literal["selecting", "confirmed", "completed"]
SetupMode = Literal["create", "join"]

# Registration steps
STEP_UNREGISTERED = 0
STEP_AWAITING_NAME = 1
STEP_AWAITING_CIRCLE = 2
STEP_COMPLETE = 3


class User(BaseModel):
    user_id: str
    name: str = ""
    circle: str = ""  # legacy free-text circle name
    primary_circle_id: int | None = None
    step: int = STEP_UNREGISTERED
    setup_mode: SetupMode | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Circle(BaseModel):
    id: int | None = None
    name: str
    created_by: str = ""
    created_at: datetime = Field(default_factory=datetime.now)


class Membership(BaseModel):
    id: int | None = None
    user_id: str
    circle_id: int
    status: MembershipStatus = "active"
    joined_at: datetime = Field(default_factory=datetime.now)
    left_at: datetime | None = None


class Event(BaseModel):
    id: int | None = None
    name: str
    organizer_id: str
    circle: str = ""  # legacy circle name
    circle_id: int | None = None
    total_amount: int
    split_amount: int
    remainder: int = 0
    status: EventStatus = "confirmed"
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Participant(BaseModel):
    id: int | None = None
    event_id: int
    user_id: str
    user_name: str
    paid: bool = False
    reported_at: datetime | None = None
    approved_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


# ── Query rows ─────────────────────────────────────────────────────


class CircleMember(BaseModel):
    user_id: str
    name: str
    joined_at: datetime


class UnpaidEvent(BaseModel):
    id: int
    name: str
    amount: int


class PaymentStatus(BaseModel):
    event_id: int
    event_name: str
    amount: int
    paid: bool
    approved: bool


class UnpaidParticipant(BaseModel):
    participant_id: int
    user_id: str
    user_name: str
    event_id: int
    event_name: str
    split_amount: int
    created_at: datetime


class PendingApproval(BaseModel):
    id: int
    event_id: int
    participant_user_id: str
    participant_name: str
    event_name: str
    amount: int
    reported_at: datetime | None = None


class ReceivedMessage(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    user_id: str
    text: str


# ── Mini-app / admin API ───────────────────────────────────────────


class Identity(BaseModel):
    user_id: str
    display_name: str = ""


class CreateEventRequest(BaseModel):
    event_name: str
    total_amount: int
    participant_ids: list[str]
    circle_id: int | None = None


class CreateEventResponse(BaseModel):
    event_id: int
    split_amount: int
    remainder: int
    enrolled: int


class ApproveRequest(BaseModel):
    participant_ids: list[int]


class ApproveResponse(BaseModel):
    approved: list[int]


class CreateCircleRequest(BaseModel):
    name: str


class JoinCircleRequest(BaseModel):
    circle_name: str | None = None
    circle_id: int | None = None


class RemoveMemberRequest(BaseModel):
    target_user_id: str


class CirclesResponse(BaseModel):
    circles: list[Circle]
    primary_circle_id: int | None = None


class CircleMembersResponse(BaseModel):
    circle: Circle
    members: list[CircleMember]


class MeResponse(BaseModel):
    user_id: str
    display_name: str
    registered: bool
    name: str | None = None
    step: int | None = None
    primary_circle_id: int | None = None


class SendRequest(BaseModel):
    user_id: str
    text: str
