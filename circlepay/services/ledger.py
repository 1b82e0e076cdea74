from loguru import logger

from circlepay.db.repository import LedgerRepository
from circlepay.errors import Conflict, Forbidden, InvalidRequest, NotFound
from circlepay.messaging.notifier import Notifier
from circlepay.models.schemas import (
    Event,
    Participant,
    PaymentStatus,
    PendingApproval,
    UnpaidEvent,
    UnpaidParticipant,
)


def format_yen(amount: int) -> str:
    return f"¥{amount:,}"


def split_evenly(total_amount: int, head_count: int) -> tuple[int, int]:
    """Per-head share and the remainder the organizer absorbs."""
    split = total_amount // head_count
    return split, total_amount - split * head_count


class LedgerService:
    """Events, participants and the report -> approve payment lifecycle."""

    def __init__(self, repo: LedgerRepository, notifier: Notifier):
        self.repo = repo
        self.notifier = notifier

    def create_event(
        self,
        name: str,
        organizer_id: str,
        circle_name: str,
        total_amount: int,
        participant_ids: list[str],
        circle_id: int | None = None,
    ) -> tuple[Event, list[Participant]]:
        if not name.strip():
            raise InvalidRequest("event name is required")
        if total_amount <= 0:
            raise InvalidRequest("total amount must be positive")
        if not participant_ids:
            raise InvalidRequest("at least one participant is required")

        organizer = self.repo.get_user(organizer_id)
        if organizer is None:
            raise NotFound(f"organizer {organizer_id} not found")

        split_amount, remainder = split_evenly(total_amount, len(participant_ids))
        if circle_id is None and circle_name:
            circle = self.repo.get_circle_by_name(circle_name)
            circle_id = circle.id if circle else None

        event = self.repo.add_event(
            Event(
                name=name,
                organizer_id=organizer_id,
                circle=circle_name,
                circle_id=circle_id,
                total_amount=total_amount,
                split_amount=split_amount,
                remainder=remainder,
                status="confirmed",
            )
        )
        if remainder:
            logger.info(
                "Event #{}: {} does not split evenly, organizer absorbs {}",
                event.id,
                total_amount,
                remainder,
            )

        enrolled = []
        for participant_id in participant_ids:
            user = self.repo.get_user(participant_id)
            if user is None:
                logger.warning("Skipping unknown participant {} for event #{}", participant_id, event.id)
                continue
            enrolled.append(
                self.repo.add_participant(
                    Participant(event_id=event.id, user_id=user.user_id, user_name=user.name)
                )
            )

        for participant in enrolled:
            self.notifier.notify(
                participant.user_id,
                f"[Split request]\n{organizer.name} created a cost-split event.\n\n"
                f"Event: {name}\nYour share: {format_yen(split_amount)}\n"
                f"Pay to: {organizer.name}\n\n"
                "Once you have paid, tap \"💰 I paid\" to report it.",
            )

        logger.info(
            "Created event #{} '{}' ({} participants, {} each)",
            event.id,
            name,
            len(enrolled),
            split_amount,
        )
        return event, enrolled

    def report_payment(self, event_id: int, user_id: str) -> bool:
        """Mark the user's share of an event as paid.

        Repeating a report is a no-op (returns False, no second organizer
        alert). Raises NotFound when the user is not on the event.
        """
        participant = self.repo.find_participant(event_id, user_id)
        if participant is None:
            raise NotFound(f"no participation in event #{event_id}")
        if self.repo.mark_reported(event_id, user_id) == 0:
            logger.info("Duplicate payment report: event={}, user={}", event_id, user_id)
            return False

        logger.info("Payment reported: event={}, user={}", event_id, user_id)
        event = self.repo.get_event(event_id)
        if event is not None:
            self.notifier.notify(
                event.organizer_id,
                f"💰 Payment report\n\n{participant.user_name} reported paying for "
                f"\"{event.name}\".\n\nPlease check the approval screen.",
            )
        return True

    def approve_participant(self, participant_id: int, requester_id: str) -> bool:
        """Approve a reported payment. Only the event's organizer may do this.

        Returns False when the payment was already approved.
        """
        participant = self.repo.get_participant(participant_id)
        if participant is None:
            raise NotFound(f"participant #{participant_id} not found")
        event = self.repo.get_event(participant.event_id)
        if event is None:
            raise NotFound(f"event #{participant.event_id} not found")
        if event.organizer_id != requester_id:
            logger.warning("Approval of #{} refused for {}", participant_id, requester_id)
            raise Forbidden("only the organizer can approve payments")
        if participant.approved_at is not None:
            return False
        if not participant.paid:
            raise Conflict("payment has not been reported yet")

        if self.repo.mark_approved(participant_id) == 0:
            return False
        logger.info("Approved participant #{} on event #{}", participant_id, event.id)

        organizer = self.repo.get_user(requester_id)
        organizer_name = organizer.name if organizer else "The organizer"
        self.notifier.notify(
            participant.user_id,
            f"[Payment approved]\n{organizer_name} approved your payment.\n\n"
            f"Event: {event.name}\nAmount: {format_yen(event.split_amount)}\n\nThank you!",
        )
        return True

    def approve_participants(self, participant_ids: list[int], requester_id: str) -> list[int]:
        approved = []
        for participant_id in participant_ids:
            try:
                if self.approve_participant(participant_id, requester_id):
                    approved.append(participant_id)
            except (NotFound, Forbidden, Conflict) as e:
                logger.warning("Skipped approval of #{}: {}", participant_id, e.message)
        return approved

    # ── queries ────────────────────────────────────────────────────

    def unpaid_events_for_user(self, user_id: str) -> list[UnpaidEvent]:
        return self.repo.get_unpaid_events_for_user(user_id)

    def payment_status_for_user(self, user_id: str) -> list[PaymentStatus]:
        return self.repo.get_user_payment_status(user_id)

    def unpaid_participants(self) -> list[UnpaidParticipant]:
        return self.repo.get_unpaid_participants()

    def pending_approvals(self, organizer_id: str) -> list[PendingApproval]:
        return self.repo.get_pending_approvals(organizer_id)

    def events_by_organizer(self, organizer_id: str) -> list[Event]:
        return self.repo.get_events_by_organizer(organizer_id)
