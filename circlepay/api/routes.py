from fastapi import APIRouter, Depends
from loguru import logger

from circlepay.api.auth import current_identity
from circlepay.bot.conversation import sanitize_input
from circlepay.db.repository import LedgerRepository
from circlepay.deps import get_circle_service, get_ledger, get_repo
from circlepay.errors import Forbidden, InvalidRequest, NotAMember, NotFound
from circlepay.models.schemas import (
    ApproveRequest,
    ApproveResponse,
    Circle,
    CircleMembersResponse,
    CirclesResponse,
    CreateCircleRequest,
    CreateEventRequest,
    CreateEventResponse,
    Event,
    Identity,
    JoinCircleRequest,
    MeResponse,
    PendingApproval,
    RemoveMemberRequest,
)
from circlepay.services.circles import CircleService
from circlepay.services.ledger import LedgerService

router = APIRouter(prefix="/api/app")


@router.get("/me", response_model=MeResponse)
async def get_me(
    identity: Identity = Depends(current_identity),
    repo: LedgerRepository = Depends(get_repo),
):
    user = repo.get_user(identity.user_id)
    if user is None:
        return MeResponse(
            user_id=identity.user_id, display_name=identity.display_name, registered=False
        )
    return MeResponse(
        user_id=user.user_id,
        display_name=identity.display_name,
        registered=True,
        name=user.name,
        step=user.step,
        primary_circle_id=user.primary_circle_id,
    )


# ── events ─────────────────────────────────────────────────────────


@router.get("/events", response_model=list[Event])
async def list_events(
    identity: Identity = Depends(current_identity),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.events_by_organizer(identity.user_id)


@router.post("/events", response_model=CreateEventResponse)
async def create_event(
    request: CreateEventRequest,
    identity: Identity = Depends(current_identity),
    repo: LedgerRepository = Depends(get_repo),
    circles: CircleService = Depends(get_circle_service),
    ledger: LedgerService = Depends(get_ledger),
):
    organizer = repo.get_user(identity.user_id)
    if organizer is None:
        raise NotFound("user not found")

    circle_name = organizer.circle
    if request.circle_id is not None:
        circle = circles.get_circle(request.circle_id)
        if not circles.is_member(identity.user_id, circle.id):
            raise Forbidden("not a member of this circle")
        circle_name = circle.name
    else:
        primary = circles.primary_circle(organizer)
        if primary is not None:
            circle_name = primary.name

    event, enrolled = ledger.create_event(
        name=sanitize_input(request.event_name),
        organizer_id=identity.user_id,
        circle_name=circle_name,
        total_amount=request.total_amount,
        participant_ids=request.participant_ids,
        circle_id=request.circle_id,
    )
    return CreateEventResponse(
        event_id=event.id,
        split_amount=event.split_amount,
        remainder=event.remainder,
        enrolled=len(enrolled),
    )


# ── approvals ──────────────────────────────────────────────────────


@router.get("/approvals", response_model=list[PendingApproval])
async def list_approvals(
    identity: Identity = Depends(current_identity),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.pending_approvals(identity.user_id)


@router.post("/approvals", response_model=ApproveResponse)
async def approve_payments(
    request: ApproveRequest,
    identity: Identity = Depends(current_identity),
    ledger: LedgerService = Depends(get_ledger),
):
    if not request.participant_ids:
        raise InvalidRequest("no participants specified")
    approved = ledger.approve_participants(request.participant_ids, identity.user_id)
    return ApproveResponse(approved=approved)


# ── circles ────────────────────────────────────────────────────────


@router.get("/circles", response_model=CirclesResponse)
async def list_circles(
    identity: Identity = Depends(current_identity),
    repo: LedgerRepository = Depends(get_repo),
    circles: CircleService = Depends(get_circle_service),
):
    user = repo.get_user(identity.user_id)
    return CirclesResponse(
        circles=circles.circles_for_user(identity.user_id),
        primary_circle_id=user.primary_circle_id if user else None,
    )


@router.post("/circles", response_model=Circle)
async def create_circle(
    request: CreateCircleRequest,
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    name = sanitize_input(request.name)
    if not name:
        raise InvalidRequest("circle name cannot be empty")
    return circles.create_circle_and_join(name, identity.user_id)


@router.post("/circles/join", response_model=Circle)
async def join_circle(
    request: JoinCircleRequest,
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    if request.circle_id is not None:
        circle = circles.get_circle(request.circle_id)
        circles.join_circle(identity.user_id, circle.id)
        return circle
    name = sanitize_input(request.circle_name or "")
    if not name:
        raise InvalidRequest("circle name or id is required")
    return circles.join_circle_by_name(identity.user_id, name)


@router.get("/circles/search", response_model=list[Circle])
async def search_circles(
    q: str = "",
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    query = sanitize_input(q)
    if not query:
        raise InvalidRequest("search query is required")
    return circles.search_circles(query)


@router.get("/circles/{circle_id}/members", response_model=CircleMembersResponse)
async def circle_members(
    circle_id: int,
    exclude_myself: bool = False,
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    circle = circles.get_circle(circle_id)
    if not circles.is_member(identity.user_id, circle_id):
        raise NotAMember("not a member of this circle")
    exclude = identity.user_id if exclude_myself else ""
    return CircleMembersResponse(circle=circle, members=circles.members(circle_id, exclude))


@router.post("/circles/{circle_id}/leave", response_model=CirclesResponse)
async def leave_circle(
    circle_id: int,
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    circles.leave_circle(identity.user_id, circle_id)
    primary = circles.reassign_primary_after_exit(identity.user_id, circle_id)
    return CirclesResponse(
        circles=circles.circles_for_user(identity.user_id), primary_circle_id=primary
    )


@router.post("/circles/{circle_id}/remove")
async def remove_member(
    circle_id: int,
    request: RemoveMemberRequest,
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    if not circles.is_member(identity.user_id, circle_id):
        raise NotAMember("not a member of this circle")
    if request.target_user_id == identity.user_id:
        raise InvalidRequest("use the leave endpoint to leave a circle yourself")
    try:
        circles.remove_from_circle(request.target_user_id, circle_id)
    except NotAMember as e:
        raise NotFound("user is not a member of this circle") from e
    circles.reassign_primary_after_exit(request.target_user_id, circle_id)
    logger.info("{} removed {} from circle #{}", identity.user_id, request.target_user_id, circle_id)
    return {"detail": "Member removed"}


@router.post("/circles/{circle_id}/primary", response_model=CirclesResponse)
async def set_primary_circle(
    circle_id: int,
    identity: Identity = Depends(current_identity),
    circles: CircleService = Depends(get_circle_service),
):
    if not circles.is_member(identity.user_id, circle_id):
        raise NotAMember("not a member of this circle")
    circles.set_primary_circle(identity.user_id, circle_id)
    return CirclesResponse(
        circles=circles.circles_for_user(identity.user_id), primary_circle_id=circle_id
    )
