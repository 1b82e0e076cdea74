import html

from loguru import logger

from circlepay.db.repository import LedgerRepository
from circlepay.errors import (
    AlreadyMember,
    CirclePayError,
    Conflict,
    InvalidState,
    NotFound,
    Transient,
)
from circlepay.messaging.notifier import Choice, ChoicesContent, Content, TextContent
from circlepay.models.schemas import (
    STEP_AWAITING_CIRCLE,
    STEP_AWAITING_NAME,
    STEP_COMPLETE,
    Circle,
    User,
)
from circlepay.services.circles import CircleService
from circlepay.services.ledger import LedgerService, format_yen

# Circle setup choices offered after the name is known
CHOICE_CREATE = "Circle: create new"
CHOICE_JOIN = "Circle: join existing"

# Prefixed commands
REPORT_PREFIX = "report:"
JOIN_PREFIX = "join:"

# Main menu commands
CMD_PAID = "💰 I paid"
CMD_STATUS = "📊 My status"
CMD_CIRCLES = "📋 My circles"
CMD_ORGANIZER = "👤 Organizer menu"
CMD_ADD_CIRCLE = "🔄 Add circle"

MAX_SUGGESTIONS = 5

NO_CONTENT = "Your message was empty."
GENERIC_ERROR = "Something went wrong."
RETRY_LATER = "Something went wrong. Please try again in a little while."


def sanitize_input(text: str) -> str:
    return html.escape(text).strip()


def _suggestion_lines(circles: list[Circle]) -> str:
    lines = [f"• {c.name}" for c in circles[:MAX_SUGGESTIONS]]
    if len(circles) > MAX_SUGGESTIONS:
        lines.append("...")
    return "\n".join(lines)


class ConversationStateMachine:
    """Turns one inbound text into one reply, driven by the user's stored step.

    Step 1 waits for a name, step 2 for a circle (legacy direct name, or the
    create/join sub-modes), step 3 dispatches menu commands.
    """

    def __init__(
        self,
        repo: LedgerRepository,
        circles: CircleService,
        ledger: LedgerService,
        mini_app_url: str = "",
    ):
        self.repo = repo
        self.circles = circles
        self.ledger = ledger
        self.mini_app_url = mini_app_url.rstrip("/")

    def handle(self, user_id: str, raw_text: str) -> Content:
        text = sanitize_input(raw_text)
        if not text:
            return TextContent(text=NO_CONTENT)

        try:
            user = self.repo.get_user(user_id)
            if user is None:
                return self._start_registration(user_id)
            return self._dispatch(user, text)
        except InvalidState as e:
            logger.error("Invalid conversation state for {}: {}", user_id, e.message)
            return TextContent(text=GENERIC_ERROR)
        except Transient as e:
            logger.error("Transient failure handling message from {}: {}", user_id, e.message)
            return TextContent(text=RETRY_LATER)
        except CirclePayError as e:
            logger.info("Rejected message from {}: {}", user_id, e.message)
            return TextContent(text=f"That didn't work: {e.message}")

    def start(self, user_id: str) -> Content:
        """Re-issue the prompt for wherever the user is in registration."""
        try:
            user = self.repo.get_user(user_id)
            if user is None:
                return self._start_registration(user_id)
            if user.step == STEP_AWAITING_NAME:
                return TextContent(text="Welcome! What's your name?")
            if user.step == STEP_AWAITING_CIRCLE:
                return self._circle_choice(user)
            if user.step == STEP_COMPLETE:
                return self._main_menu(f"Hi {user.name}! Choose an action:")
            raise InvalidState(f"user {user_id} has unexpected step {user.step}")
        except InvalidState as e:
            logger.error("Invalid conversation state for {}: {}", user_id, e.message)
            return TextContent(text=GENERIC_ERROR)
        except Transient as e:
            logger.error("Transient failure on /start for {}: {}", user_id, e.message)
            return TextContent(text=RETRY_LATER)

    def _dispatch(self, user: User, text: str) -> Content:
        if user.step == STEP_AWAITING_NAME:
            return self._handle_name(user, text)
        if user.step == STEP_AWAITING_CIRCLE:
            return self._handle_circle_input(user, text)
        if user.step == STEP_COMPLETE:
            return self._handle_command(user, text)
        raise InvalidState(f"user {user.user_id} has unexpected step {user.step}")

    # ── registration ───────────────────────────────────────────────

    def _start_registration(self, user_id: str) -> Content:
        try:
            self.repo.add_user(User(user_id=user_id, step=STEP_AWAITING_NAME))
        except Conflict:
            # Duplicate delivery of the first message
            pass
        logger.info("New user {}", user_id)
        return TextContent(text="Nice to meet you! What's your name?")

    def _handle_name(self, user: User, name: str) -> Content:
        user.name = name
        user.step = STEP_AWAITING_CIRCLE
        self.repo.update_user(user)
        return self._circle_choice(user)

    def _circle_choice(self, user: User) -> Content:
        return ChoicesContent(
            text=(
                f"Thanks, {user.name}!\n\n"
                "Do you want to create a new circle, or join an existing one?"
            ),
            choices=[
                Choice(label="🆕 Create new", text=CHOICE_CREATE),
                Choice(label="🔍 Join existing", text=CHOICE_JOIN),
            ],
        )

    def _handle_circle_input(self, user: User, text: str) -> Content:
        if text == CHOICE_CREATE:
            user.setup_mode = "create"
            self.repo.update_user(user)
            return TextContent(text="Let's create a new circle!\nWhat should it be called?")
        if text == CHOICE_JOIN:
            user.setup_mode = "join"
            self.repo.update_user(user)
            return TextContent(
                text="Which circle do you want to join?\n(The name must match exactly.)"
            )

        if user.setup_mode == "create":
            return self._handle_circle_create(user, text)
        if user.setup_mode == "join":
            return self._handle_circle_join(user, text)
        return self._handle_circle_legacy(user, text)

    def _complete_registration(self, user: User, circle: Circle) -> None:
        user.circle = circle.name
        user.primary_circle_id = circle.id
        user.step = STEP_COMPLETE
        user.setup_mode = None
        self.repo.update_user(user)
        logger.info("User {} registered in circle #{}", user.user_id, circle.id)

    def _handle_circle_create(self, user: User, name: str) -> Content:
        taken = (
            "That circle name is already taken.\n"
            f"Try another name, or send \"{CHOICE_JOIN}\" to join it instead."
        )
        if self.circles.find_circle(name) is not None:
            return TextContent(text=taken)
        try:
            circle = self.circles.create_circle_and_join(name, user.user_id)
        except Conflict:
            return TextContent(text=taken)

        self._complete_registration(user, circle)
        return self._main_menu(
            f"You're all set!\n\nName: {user.name}\nCircle: {circle.name} (new)\n\n"
            "Welcome to CirclePay!"
        )

    def _handle_circle_join(self, user: User, name: str) -> Content:
        circle = self.circles.find_circle(name)
        if circle is None:
            candidates = self.circles.search_circles(name)
            if candidates:
                return TextContent(
                    text=(
                        f"No circle called \"{name}\" was found.\n\n"
                        f"Similar names:\n{_suggestion_lines(candidates)}\n\n"
                        "Please send the exact circle name."
                    )
                )
            return TextContent(
                text=(
                    f"No circle called \"{name}\" was found.\n\n"
                    f"Send the exact name, or \"{CHOICE_CREATE}\" to create it."
                )
            )

        try:
            self.circles.join_circle(user.user_id, circle.id)
        except AlreadyMember:
            return TextContent(text="You're already a member of this circle.")
        self.circles.set_primary_circle(user.user_id, circle.id)

        self._complete_registration(user, circle)
        count = self.circles.member_count(circle.id)
        return self._main_menu(
            f"You're all set!\n\nName: {user.name}\nCircle: {circle.name} ({count} members)\n\n"
            "Welcome to CirclePay!"
        )

    def _handle_circle_legacy(self, user: User, name: str) -> Content:
        circle = self.circles.get_or_create_circle(name, user.user_id)
        try:
            self.circles.join_circle(user.user_id, circle.id)
        except AlreadyMember:
            pass
        self.circles.set_primary_circle(user.user_id, circle.id)

        self._complete_registration(user, circle)
        return self._main_menu(
            f"You're all set!\nName: {user.name}\nCircle: {circle.name}\n\n"
            "Welcome to CirclePay!"
        )

    # ── registered users ───────────────────────────────────────────

    def _handle_command(self, user: User, text: str) -> Content:
        if text.startswith(REPORT_PREFIX):
            raw_id = text[len(REPORT_PREFIX):].strip()
            if not (raw_id.isascii() and raw_id.isdigit()):
                return TextContent(text="That event ID is not valid.")
            return self._report_payment(user, int(raw_id))

        if text.startswith(JOIN_PREFIX):
            return self._join_additional_circle(user, text[len(JOIN_PREFIX):].strip())

        if text == CMD_PAID:
            return self._unpaid_events(user)
        if text == CMD_STATUS:
            return self._payment_status(user)
        if text == CMD_CIRCLES:
            return self._circle_list(user)
        if text == CMD_ORGANIZER:
            return self._organizer_menu()
        if text == CMD_ADD_CIRCLE:
            return TextContent(
                text=(
                    "Send the name of the circle you want to join, "
                    f"in the form \"{JOIN_PREFIX}<name>\".\n"
                    f"Example: {JOIN_PREFIX}Tennis Club"
                )
            )
        return self._main_menu(f"Hi {user.name}! Choose an action:")

    def _main_menu(self, text: str) -> Content:
        organizer = (
            Choice(label=CMD_ORGANIZER, url=self.mini_app_url)
            if self.mini_app_url
            else Choice(label=CMD_ORGANIZER, text=CMD_ORGANIZER)
        )
        return ChoicesContent(
            text=text,
            choices=[
                Choice(label=CMD_PAID, text=CMD_PAID),
                Choice(label=CMD_STATUS, text=CMD_STATUS),
                Choice(label=CMD_CIRCLES, text=CMD_CIRCLES),
                Choice(label=CMD_ADD_CIRCLE, text=CMD_ADD_CIRCLE),
                organizer,
            ],
        )

    def _unpaid_events(self, user: User) -> Content:
        events = self.ledger.unpaid_events_for_user(user.user_id)
        if not events:
            return TextContent(text="You have no unpaid events.")
        return ChoicesContent(
            text="Which event do you want to report a payment for?",
            choices=[
                Choice(label=f"{e.name} ({format_yen(e.amount)})", text=f"{REPORT_PREFIX}{e.id}")
                for e in events
            ],
        )

    def _report_payment(self, user: User, event_id: int) -> Content:
        try:
            changed = self.ledger.report_payment(event_id, user.user_id)
        except NotFound:
            return TextContent(text="You have no share in that event.")
        if not changed:
            return TextContent(text="You've already reported this payment.")
        return TextContent(text="Payment reported! Waiting for the organizer's approval.")

    def _payment_status(self, user: User) -> Content:
        statuses = self.ledger.payment_status_for_user(user.user_id)
        if not statuses:
            return TextContent(text="You're not part of any event yet.")
        lines = []
        for s in statuses:
            if s.approved:
                state = "✅ approved"
            elif s.paid:
                state = "🕐 reported"
            else:
                state = "⏳ unpaid"
            lines.append(f"• {s.event_name}: {format_yen(s.amount)} {state}")
        return TextContent(text="[Your payments]\n\n" + "\n".join(lines))

    def _circle_list(self, user: User) -> Content:
        circles = self.circles.resolve_circle_membership(user)
        if not circles:
            return TextContent(text="You're not in any circle.")
        lines = []
        for i, circle in enumerate(circles, 1):
            count = self.circles.member_count(circle.id) if circle.id is not None else 0
            star = " ⭐" if circle.id is not None and circle.id == user.primary_circle_id else ""
            lines.append(f"{i}. {circle.name} ({count} members){star}")
        return TextContent(
            text=(
                "[Your circles]\n\n" + "\n".join(lines) + "\n\n⭐ = main circle\n\n"
                "Circles can be managed from the mini-app."
            )
        )

    def _join_additional_circle(self, user: User, name: str) -> Content:
        if not name:
            return TextContent(text="Please include a circle name.")
        circle = self.circles.find_circle(name)
        if circle is None:
            candidates = self.circles.search_circles(name)
            if candidates:
                return TextContent(
                    text=(
                        f"\"{name}\" was not found.\n\n"
                        f"Similar names:\n{_suggestion_lines(candidates)}"
                    )
                )
            return TextContent(text=f"No circle called \"{name}\" was found.")

        try:
            self.circles.join_circle(user.user_id, circle.id)
        except AlreadyMember:
            return TextContent(text="You're already a member of this circle.")
        count = self.circles.member_count(circle.id)
        return TextContent(text=f"Joined \"{circle.name}\"! ({count} members)")

    def _organizer_menu(self) -> Content:
        if not self.mini_app_url:
            return TextContent(text="Organizer tools are not available right now.")
        return ChoicesContent(
            text="Organizer menu:",
            choices=[
                Choice(label="📝 Create an event", url=f"{self.mini_app_url}/create"),
                Choice(label="✅ Approve payments", url=f"{self.mini_app_url}/approve"),
                Choice(label="📊 Manage events", url=f"{self.mini_app_url}/events"),
            ],
        )
