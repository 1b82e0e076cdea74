from collections import defaultdict

from loguru import logger

from circlepay.db.repository import LedgerRepository
from circlepay.errors import AlreadyMember, CirclePayError, Conflict, NotAMember, NotFound
from circlepay.models.schemas import STEP_COMPLETE, Circle, CircleMember, User


class CircleService:
    """Circles, memberships and the primary-circle pointer."""

    def __init__(self, repo: LedgerRepository):
        self.repo = repo
        # Set once the legacy circle names have been moved into the circle table.
        self.migration_complete = False

    # ── circles ────────────────────────────────────────────────────

    def create_circle(self, name: str, creator_id: str) -> Circle:
        circle = self.repo.add_circle(name, creator_id)
        logger.info("Created circle #{} '{}' (by {})", circle.id, name, creator_id)
        return circle

    def get_or_create_circle(self, name: str, creator_id: str) -> Circle:
        circle = self.repo.get_circle_by_name(name)
        if circle is not None:
            return circle
        try:
            return self.create_circle(name, creator_id)
        except Conflict:
            # Created by someone else in between
            return self.repo.get_circle_by_name(name)

    def get_circle(self, circle_id: int) -> Circle:
        circle = self.repo.get_circle(circle_id)
        if circle is None:
            raise NotFound(f"circle #{circle_id} not found")
        return circle

    def find_circle(self, name: str) -> Circle | None:
        return self.repo.get_circle_by_name(name)

    def search_circles(self, query: str) -> list[Circle]:
        return self.repo.search_circles(query)

    def circles_for_user(self, user_id: str) -> list[Circle]:
        return self.repo.get_user_circles(user_id)

    def members(self, circle_id: int, exclude_user_id: str = "") -> list[CircleMember]:
        return self.repo.get_circle_members(circle_id, exclude_user_id)

    def member_count(self, circle_id: int) -> int:
        return self.repo.count_active_members(circle_id)

    def is_member(self, user_id: str, circle_id: int) -> bool:
        membership = self.repo.get_membership(user_id, circle_id)
        return membership is not None and membership.status == "active"

    def primary_circle(self, user: User) -> Circle | None:
        if user.primary_circle_id is None:
            return None
        return self.repo.get_circle(user.primary_circle_id)

    # ── membership transitions ─────────────────────────────────────

    def join_circle(self, user_id: str, circle_id: int) -> None:
        existing = self.repo.get_membership(user_id, circle_id)
        if existing is not None:
            if existing.status == "active":
                raise AlreadyMember("already a member of this circle")
            if not self.repo.reactivate_membership(existing.id):
                raise AlreadyMember("already a member of this circle")
            logger.info("Rejoined circle: user={}, circle={}", user_id, circle_id)
            return

        try:
            self.repo.add_membership(user_id, circle_id)
        except Conflict as e:
            raise AlreadyMember("already a member of this circle") from e
        logger.info("Joined circle: user={}, circle={}", user_id, circle_id)

    def leave_circle(self, user_id: str, circle_id: int) -> None:
        if self.repo.end_membership(user_id, circle_id, "left") == 0:
            raise NotAMember("not a member of this circle")
        logger.info("Left circle: user={}, circle={}", user_id, circle_id)

    def remove_from_circle(self, target_user_id: str, circle_id: int) -> None:
        if self.repo.end_membership(target_user_id, circle_id, "removed") == 0:
            raise NotAMember("user is not a member of this circle")
        logger.info("Removed from circle: user={}, circle={}", target_user_id, circle_id)

    def set_primary_circle(self, user_id: str, circle_id: int | None) -> None:
        self.repo.set_primary_circle(user_id, circle_id)

    def reassign_primary_after_exit(self, user_id: str, circle_id: int) -> int | None:
        """Move the primary pointer off a circle the user no longer belongs to.

        Only acts when `circle_id` was the primary circle. Returns the new
        primary circle id (None when no active membership is left).
        """
        user = self.repo.get_user(user_id)
        if user is None or user.primary_circle_id != circle_id:
            return user.primary_circle_id if user else None
        remaining = self.repo.get_user_circles(user_id)
        new_primary = remaining[0].id if remaining else None
        self.repo.set_primary_circle(user_id, new_primary)
        logger.info("Primary circle of {} changed {} -> {}", user_id, circle_id, new_primary)
        return new_primary

    def create_circle_and_join(self, name: str, user_id: str) -> Circle:
        circle = self.create_circle(name, user_id)
        try:
            self.join_circle(user_id, circle.id)
        except CirclePayError:
            self.repo.delete_circle(circle.id)
            logger.warning("Dropped circle #{} after failed join by {}", circle.id, user_id)
            raise
        self.set_primary_circle(user_id, circle.id)
        return circle

    def join_circle_by_name(self, user_id: str, name: str) -> Circle:
        circle = self.repo.get_circle_by_name(name)
        if circle is None:
            raise NotFound(f"circle not found: {name}")
        self.join_circle(user_id, circle.id)
        return circle

    # ── legacy circle names ────────────────────────────────────────

    def migrate_legacy_circles(self) -> bool:
        """Move free-text circle names into circles/memberships, once.

        Skipped entirely when any circle already exists. Returns True when the
        migration ran.
        """
        if self.repo.count_circles() > 0:
            self.migration_complete = True
            return False

        logger.info("Migrating legacy circle names to circles/memberships...")
        by_circle: dict[str, list[User]] = defaultdict(list)
        for user in self.repo.get_all_users():
            if user.circle and user.step == STEP_COMPLETE:
                by_circle[user.circle].append(user)

        ids_by_name: dict[str, int] = {}
        for name, users in sorted(by_circle.items()):
            creator = min(u.user_id for u in users)
            try:
                circle = self.repo.add_circle(name, creator)
            except Conflict:
                circle = self.repo.get_circle_by_name(name)
            ids_by_name[name] = circle.id
            for user in users:
                try:
                    self.repo.add_membership(user.user_id, circle.id)
                except Conflict:
                    pass
                if user.primary_circle_id is None:
                    self.repo.set_primary_circle(user.user_id, circle.id)

        backfilled = 0
        for event in self.repo.get_all_events():
            if event.circle_id is None and event.circle in ids_by_name:
                self.repo.set_event_circle_id(event.id, ids_by_name[event.circle])
                backfilled += 1

        self.migration_complete = True
        logger.info(
            "Circle migration completed: {} circles, {} events backfilled",
            len(ids_by_name),
            backfilled,
        )
        return True

    def resolve_circle_membership(self, user: User) -> list[Circle]:
        """Circles a user belongs to.

        Reads the membership table; until the legacy migration has completed a
        user with no memberships falls back to their free-text circle name.
        """
        circles = self.repo.get_user_circles(user.user_id)
        if circles or self.migration_complete or not user.circle:
            return circles
        legacy = self.repo.get_circle_by_name(user.circle)
        return [legacy or Circle(name=user.circle)]
