"""Shared test fixtures for CirclePay tests."""

import pytest

from circlepay.bot.conversation import ConversationStateMachine
from circlepay.db.repository import LedgerRepository
from circlepay.errors import Transient
from circlepay.messaging.notifier import Notifier
from circlepay.models.schemas import STEP_COMPLETE, User
from circlepay.services.circles import CircleService
from circlepay.services.ledger import LedgerService


class RecordingNotifier(Notifier):
    """Keeps every delivery in memory. `notify` records instead of spawning a task."""

    def __init__(self, recipients=None):
        super().__init__(recipients)
        self.delivered = []
        self.pushed = []
        self.failing = set()

    async def _deliver(self, target, content):
        if target in self.failing:
            raise Transient(f"cannot reach {target}")
        self.delivered.append((target, content))

    def notify(self, user_id, text):
        self.pushed.append((user_id, text))

    def pushed_to(self, user_id):
        return [text for uid, text in self.pushed if uid == user_id]


@pytest.fixture
def repo(tmp_path):
    repo = LedgerRepository(str(tmp_path / "circlepay.json"))
    yield repo
    repo.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def circles(repo):
    service = CircleService(repo)
    service.migrate_legacy_circles()
    return service


@pytest.fixture
def ledger(repo, notifier):
    return LedgerService(repo, notifier)


@pytest.fixture
def conversation(repo, circles, ledger):
    return ConversationStateMachine(repo, circles, ledger, mini_app_url="https://app.example.com")


@pytest.fixture
def make_member(repo, circles):
    """Register a fully onboarded user, optionally inside a circle."""

    def _make(user_id, name, circle_name=None):
        repo.add_user(User(user_id=user_id, name=name, step=STEP_COMPLETE))
        if circle_name is None:
            return repo.get_user(user_id)
        circle = circles.get_or_create_circle(circle_name, user_id)
        circles.join_circle(user_id, circle.id)
        user = repo.get_user(user_id)
        if user.primary_circle_id is None:
            circles.set_primary_circle(user_id, circle.id)
        user = repo.get_user(user_id)
        user.circle = user.circle or circle_name
        return repo.update_user(user)

    return _make
