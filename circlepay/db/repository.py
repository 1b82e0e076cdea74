import json
import threading
from contextlib import contextmanager
from datetime import datetime

from tinydb import Query, TinyDB

from circlepay.errors import Conflict, Transient
from circlepay.models.schemas import (
    STEP_COMPLETE,
    Circle,
    CircleMember,
    Event,
    Membership,
    Participant,
    PaymentStatus,
    PendingApproval,
    UnpaidEvent,
    UnpaidParticipant,
    User,
)

USER_LIST_LIMIT = 10
SEARCH_LIMIT = 20


def _now() -> str:
    return datetime.now().isoformat()


class LedgerRepository:
    """TinyDB-backed store for users, circles, memberships, events and participants.

    Every public method runs under one lock, so a read-check-write inside a
    method is atomic with respect to other callers. Circle names and
    (user, circle) membership pairs are unique; the insert methods enforce it.
    """

    def __init__(self, db_path: str = "circlepay.json"):
        self.db = TinyDB(db_path)
        self.users = self.db.table("users")
        self.circles = self.db.table("circles")
        self.memberships = self.db.table("memberships")
        self.events = self.db.table("events")
        self.participants = self.db.table("participants")
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self):
        with self._lock:
            try:
                yield
            except (OSError, json.JSONDecodeError) as e:
                raise Transient(f"storage failure: {e}") from e

    def close(self) -> None:
        self.db.close()

    # ── users ──────────────────────────────────────────────────────

    def get_user(self, user_id: str) -> User | None:
        with self._locked():
            doc = self.users.get(Query().user_id == user_id)
            return User(**doc) if doc else None

    def add_user(self, user: User) -> User:
        with self._locked():
            if self.users.contains(Query().user_id == user.user_id):
                raise Conflict(f"user {user.user_id} already exists")
            self.users.insert(user.model_dump(mode="json"))
            return user

    def update_user(self, user: User) -> User:
        with self._locked():
            user.updated_at = datetime.now()
            data = user.model_dump(mode="json")
            self.users.update(data, Query().user_id == user.user_id)
            return user

    def set_primary_circle(self, user_id: str, circle_id: int | None) -> None:
        with self._locked():
            self.users.update(
                {"primary_circle_id": circle_id, "updated_at": _now()},
                Query().user_id == user_id,
            )

    def get_all_users(self) -> list[User]:
        with self._locked():
            users = [User(**doc) for doc in self.users.all()]
        return sorted(users, key=lambda u: u.updated_at, reverse=True)

    # ── circles ────────────────────────────────────────────────────

    def count_circles(self) -> int:
        with self._locked():
            return len(self.circles)

    def add_circle(self, name: str, created_by: str) -> Circle:
        with self._locked():
            if self.circles.contains(Query().name == name):
                raise Conflict(f"circle '{name}' already exists")
            circle = Circle(name=name, created_by=created_by)
            data = circle.model_dump(mode="json")
            data.pop("id", None)
            circle.id = self.circles.insert(data)
            return circle

    def get_circle(self, circle_id: int) -> Circle | None:
        with self._locked():
            doc = self.circles.get(doc_id=circle_id)
            return Circle(id=doc.doc_id, **doc) if doc else None

    def get_circle_by_name(self, name: str) -> Circle | None:
        with self._locked():
            doc = self.circles.get(Query().name == name)
            return Circle(id=doc.doc_id, **doc) if doc else None

    def delete_circle(self, circle_id: int) -> None:
        with self._locked():
            self.circles.remove(doc_ids=[circle_id])

    def search_circles(self, query: str, limit: int = SEARCH_LIMIT) -> list[Circle]:
        needle = query.lower()
        with self._locked():
            docs = self.circles.search(Query().name.test(lambda val: needle in val.lower()))
        circles = sorted((Circle(id=doc.doc_id, **doc) for doc in docs), key=lambda c: c.name)
        return circles[:limit]

    # ── memberships ────────────────────────────────────────────────

    def get_membership(self, user_id: str, circle_id: int) -> Membership | None:
        M = Query()
        with self._locked():
            doc = self.memberships.get((M.user_id == user_id) & (M.circle_id == circle_id))
            return Membership(id=doc.doc_id, **doc) if doc else None

    def add_membership(self, user_id: str, circle_id: int) -> Membership:
        M = Query()
        with self._locked():
            if self.memberships.contains((M.user_id == user_id) & (M.circle_id == circle_id)):
                raise Conflict(f"membership ({user_id}, {circle_id}) already exists")
            membership = Membership(user_id=user_id, circle_id=circle_id)
            data = membership.model_dump(mode="json")
            data.pop("id", None)
            membership.id = self.memberships.insert(data)
            return membership

    def reactivate_membership(self, membership_id: int) -> bool:
        """Flip a left/removed row back to active. False if it was already active."""
        with self._locked():
            doc = self.memberships.get(doc_id=membership_id)
            if doc is None or doc["status"] == "active":
                return False
            self.memberships.update(
                {"status": "active", "joined_at": _now(), "left_at": None},
                doc_ids=[membership_id],
            )
            return True

    def end_membership(self, user_id: str, circle_id: int, status: str) -> int:
        """Move an active membership to `status`. Returns the number of rows changed."""
        M = Query()
        with self._locked():
            updated = self.memberships.update(
                {"status": status, "left_at": _now()},
                (M.user_id == user_id) & (M.circle_id == circle_id) & (M.status == "active"),
            )
            return len(updated)

    def get_user_circles(self, user_id: str) -> list[Circle]:
        """Circles the user is active in, most recently joined first."""
        M = Query()
        with self._locked():
            docs = self.memberships.search((M.user_id == user_id) & (M.status == "active"))
            docs = sorted(docs, key=lambda d: (d["joined_at"], d.doc_id), reverse=True)
            circles = []
            for doc in docs:
                circle = self.circles.get(doc_id=doc["circle_id"])
                if circle is not None:
                    circles.append(Circle(id=circle.doc_id, **circle))
            return circles

    def get_circle_members(self, circle_id: int, exclude_user_id: str = "") -> list[CircleMember]:
        M = Query()
        with self._locked():
            docs = self.memberships.search((M.circle_id == circle_id) & (M.status == "active"))
            members = []
            for doc in docs:
                if doc["user_id"] == exclude_user_id:
                    continue
                user = self.users.get(Query().user_id == doc["user_id"])
                if user is None or user["step"] != STEP_COMPLETE:
                    continue
                members.append(
                    CircleMember(user_id=user["user_id"], name=user["name"], joined_at=doc["joined_at"])
                )
        return sorted(members, key=lambda m: m.name)

    def count_active_members(self, circle_id: int) -> int:
        M = Query()
        with self._locked():
            return self.memberships.count((M.circle_id == circle_id) & (M.status == "active"))

    # ── events ─────────────────────────────────────────────────────

    def add_event(self, event: Event) -> Event:
        with self._locked():
            data = event.model_dump(mode="json")
            data.pop("id", None)
            event.id = self.events.insert(data)
            return event

    def get_event(self, event_id: int) -> Event | None:
        with self._locked():
            doc = self.events.get(doc_id=event_id)
            return Event(id=doc.doc_id, **doc) if doc else None

    def get_events_by_organizer(self, organizer_id: str) -> list[Event]:
        with self._locked():
            docs = self.events.search(Query().organizer_id == organizer_id)
        events = [Event(id=doc.doc_id, **doc) for doc in docs]
        return sorted(events, key=lambda e: (e.created_at, e.id), reverse=True)

    def get_all_events(self) -> list[Event]:
        with self._locked():
            return [Event(id=doc.doc_id, **doc) for doc in self.events.all()]

    def set_event_circle_id(self, event_id: int, circle_id: int) -> None:
        with self._locked():
            self.events.update({"circle_id": circle_id, "updated_at": _now()}, doc_ids=[event_id])

    # ── participants ───────────────────────────────────────────────

    def add_participant(self, participant: Participant) -> Participant:
        with self._locked():
            data = participant.model_dump(mode="json")
            data.pop("id", None)
            participant.id = self.participants.insert(data)
            return participant

    def get_participant(self, participant_id: int) -> Participant | None:
        with self._locked():
            doc = self.participants.get(doc_id=participant_id)
            return Participant(id=doc.doc_id, **doc) if doc else None

    def find_participant(self, event_id: int, user_id: str) -> Participant | None:
        P = Query()
        with self._locked():
            doc = self.participants.get((P.event_id == event_id) & (P.user_id == user_id))
            return Participant(id=doc.doc_id, **doc) if doc else None

    def mark_reported(self, event_id: int, user_id: str) -> int:
        """Set paid/reported_at on an unpaid row. Returns the number of rows changed."""
        P = Query()
        with self._locked():
            updated = self.participants.update(
                {"paid": True, "reported_at": _now()},
                (P.event_id == event_id) & (P.user_id == user_id) & (P.paid == False),
            )
            return len(updated)

    def mark_approved(self, participant_id: int) -> int:
        """Set approved_at on a reported, unapproved row. Returns the number of rows changed."""
        with self._locked():
            doc = self.participants.get(doc_id=participant_id)
            if doc is None or not doc["paid"] or doc["approved_at"] is not None:
                return 0
            self.participants.update({"approved_at": _now()}, doc_ids=[participant_id])
            return 1

    # ── joined queries ─────────────────────────────────────────────

    def _joined(self, participant_cond) -> list[tuple[Participant, Event]]:
        rows = []
        for doc in self.participants.search(participant_cond):
            event_doc = self.events.get(doc_id=doc["event_id"])
            if event_doc is None:
                continue
            rows.append(
                (Participant(id=doc.doc_id, **doc), Event(id=event_doc.doc_id, **event_doc))
            )
        return rows

    def get_unpaid_events_for_user(self, user_id: str, limit: int = USER_LIST_LIMIT) -> list[UnpaidEvent]:
        P = Query()
        with self._locked():
            rows = self._joined((P.user_id == user_id) & (P.paid == False))
        rows = [(p, e) for p, e in rows if e.status == "confirmed"]
        rows.sort(key=lambda r: (r[1].created_at, r[1].id), reverse=True)
        return [UnpaidEvent(id=e.id, name=e.name, amount=e.split_amount) for _, e in rows[:limit]]

    def get_user_payment_status(self, user_id: str, limit: int = USER_LIST_LIMIT) -> list[PaymentStatus]:
        with self._locked():
            rows = self._joined(Query().user_id == user_id)
        rows.sort(key=lambda r: (r[1].created_at, r[1].id), reverse=True)
        return [
            PaymentStatus(
                event_id=e.id,
                event_name=e.name,
                amount=e.split_amount,
                paid=p.paid,
                approved=p.approved_at is not None,
            )
            for p, e in rows[:limit]
        ]

    def get_unpaid_participants(self) -> list[UnpaidParticipant]:
        P = Query()
        with self._locked():
            rows = self._joined((P.paid == False) & (P.approved_at == None))
        rows = [(p, e) for p, e in rows if e.status in ("confirmed", "selecting")]
        rows.sort(key=lambda r: (r[0].created_at, r[0].id))
        return [
            UnpaidParticipant(
                participant_id=p.id,
                user_id=p.user_id,
                user_name=p.user_name,
                event_id=e.id,
                event_name=e.name,
                split_amount=e.split_amount,
                created_at=p.created_at,
            )
            for p, e in rows
        ]

    def get_pending_approvals(self, organizer_id: str) -> list[PendingApproval]:
        P = Query()
        with self._locked():
            rows = self._joined((P.paid == True) & (P.approved_at == None))
        rows = [(p, e) for p, e in rows if e.organizer_id == organizer_id]
        rows.sort(key=lambda r: (r[0].reported_at or datetime.min, r[0].id), reverse=True)
        return [
            PendingApproval(
                id=p.id,
                event_id=e.id,
                participant_user_id=p.user_id,
                participant_name=p.user_name,
                event_name=e.name,
                amount=e.split_amount,
                reported_at=p.reported_at,
            )
            for p, e in rows
        ]
