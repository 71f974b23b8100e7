# tests/test_notifications.py
"""
Tests for the notification gateway and the Telegram delivery processor.

Run:
    pytest tests/test_notifications.py -v
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

import background.notification_processor as processor_module
from background.notification_processor import NotificationProcessor
from config import Config
from flow_system.actor import Actor
from flow_system.config.states import DeliveryStatus, NotificationKind
from flow_system.exceptions import ValidationError
from flow_system.services.notification_service import NotificationService
from flow_system.utils.time_machine import timeMachine
from flow_system.utils.tree_walker import ParticipantTree
from models import FlowNotification
from conftest import T0


def notifications(session, kind=None):
    query = session.query(FlowNotification)
    if kind is not None:
        query = query.filter_by(kind=kind.value)
    return query.order_by(FlowNotification.notificationID).all()


# =============================================================================
# TEST CLASS: Due notification scan
# =============================================================================

class TestSendDueNotifications:
    """Scheduled scan of opened windows."""

    def test_registration_open_sent_once(self, session, start_flow):
        flow, leader, _ = start_flow()
        gateway = NotificationService(session)

        first = gateway.sendDueNotifications()
        second = gateway.sendDueNotifications()

        assert first == {"registrationOpen": 1, "acceptStageOpen": 0}
        assert second == {"registrationOpen": 0, "acceptStageOpen": 0}

        sent = notifications(session, NotificationKind.REGISTRATION_OPEN)
        assert [n.userID for n in sent] == [leader.userID]
        assert flow.project.name in sent[0].text
        assert ParticipantTree(session, flow).root().notificationSent == T0

    def test_future_window_not_notified(self, session, start_flow):
        start_flow(must_be_registered_from=T0 + timedelta(hours=1))

        assert NotificationService(session).sendDueNotifications()["registrationOpen"] == 0

        timeMachine.advanceTime(hours=1)
        assert NotificationService(session).sendDueNotifications()["registrationOpen"] == 1

    def test_deeper_levels_wait_for_their_turn(self, session, start_flow):
        """Chain members are not told to register while the flow is on level 0."""
        start_flow(candidates=5)
        timeMachine.advanceTime(hours=10)

        result = NotificationService(session).sendDueNotifications()

        assert result["registrationOpen"] == 1

    def test_accept_stage_open_goes_to_sponsor(self, session, service, start_flow, referral_data, admin):
        flow, leader, _ = start_flow()
        tree = ParticipantTree(session, flow)
        root, first = tree.root(), tree.firstOfLevel(1)
        service.registerParticipant(flow.flowID, root.participantID, referral_data, admin)
        service.acceptRegistration(flow.flowID, root.participantID, admin)

        timeMachine.setTime(first.mustBeRegisteredFrom)
        service.registerParticipant(flow.flowID, first.participantID, referral_data,
                                    Actor.participant(first.userID))
        gateway = NotificationService(session)
        assert gateway.sendDueNotifications()["acceptStageOpen"] == 0

        timeMachine.setTime(first.acceptStageStartsAt)
        assert gateway.sendDueNotifications()["acceptStageOpen"] == 1
        assert gateway.sendDueNotifications()["acceptStageOpen"] == 0

        sent = notifications(session, NotificationKind.ACCEPT_STAGE_OPEN)
        assert [n.userID for n in sent] == [leader.userID]
        assert first.user.displayName in sent[0].text
        assert first.notifyAboutAcceptSent == first.acceptStageStartsAt

    def test_paused_flow_skipped(self, session, start_flow):
        flow, _, _ = start_flow()
        flow.onPause = True
        session.commit()

        assert NotificationService(session).sendDueNotifications()["registrationOpen"] == 0


# =============================================================================
# TEST CLASS: Accept time updated
# =============================================================================

class TestAcceptTimeUpdated:
    """Immediate notification when the acceptance window moves."""

    def test_cohort_and_sponsors_notified(self, session, service, start_flow, referral_data, admin):
        flow, leader, users = start_flow()
        root = ParticipantTree(session, flow).root()
        service.registerParticipant(flow.flowID, root.participantID, referral_data, admin)
        service.acceptRegistration(flow.flowID, root.participantID, admin)

        changed = service.updateAcceptTime(flow.flowID, "2:00", admin)

        assert changed == 1
        sent = notifications(session, NotificationKind.ACCEPT_TIME_UPDATED)
        assert sorted(n.userID for n in sent) == sorted([users[0].userID, leader.userID])

    def test_root_line_has_no_sponsor(self, session, service, start_flow, admin):
        flow, leader, _ = start_flow()

        service.updateAcceptTime(flow.flowID, 90, admin)

        sent = notifications(session, NotificationKind.ACCEPT_TIME_UPDATED)
        assert [n.userID for n in sent] == [leader.userID]
        assert ParticipantTree(session, flow).root().timeForAccept == 90

    def test_zero_rejected(self, service, start_flow, admin):
        flow, _, _ = start_flow()

        with pytest.raises(ValidationError):
            service.updateAcceptTime(flow.flowID, "0:00", admin)


# =============================================================================
# TEST CLASS: Delivery
# =============================================================================

class FakeBot:
    """Stands in for aiogram Bot.send_message."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_message(self, chat_id, text, **kwargs):
        if self.fail:
            raise RuntimeError("Telegram unavailable")
        self.sent.append((chat_id, text))


@pytest.fixture
def test_db_ctx(engine, monkeypatch):
    """Point the processor at the test database."""
    Session = sessionmaker(bind=engine)

    @contextmanager
    def _ctx():
        session = Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    monkeypatch.setattr(processor_module, "get_db_session_ctx", _ctx)


class TestNotificationProcessor:
    """Outbox delivery with retries."""

    def test_pending_delivered(self, session, start_flow, test_db_ctx):
        flow, leader, _ = start_flow()
        NotificationService(session).sendDueNotifications()
        bot = FakeBot()

        sent = asyncio.run(NotificationProcessor(bot=bot).process_pending_deliveries())

        assert sent == 1
        assert bot.sent[0][0] == leader.telegramID
        session.expire_all()
        notification = notifications(session)[0]
        assert notification.status == DeliveryStatus.SENT.value
        assert notification.attempts == 1
        assert notification.sentAt == T0

    def test_user_without_telegram(self, session, start_flow, test_db_ctx):
        flow, leader, _ = start_flow()
        leader.telegramID = None
        session.commit()
        NotificationService(session).sendDueNotifications()

        asyncio.run(NotificationProcessor(bot=FakeBot()).process_pending_deliveries())

        session.expire_all()
        notification = notifications(session)[0]
        assert notification.status == DeliveryStatus.ERROR.value
        assert notification.errorMessage == "User not found or no telegram ID"

    def test_retried_until_max_attempts(self, session, start_flow, test_db_ctx):
        start_flow()
        NotificationService(session).sendDueNotifications()
        processor = NotificationProcessor(bot=FakeBot(fail=True))
        max_attempts = Config.get(Config.NOTIFICATION_MAX_ATTEMPTS)

        for _ in range(max_attempts + 1):
            asyncio.run(processor.process_pending_deliveries())

        session.expire_all()
        notification = notifications(session)[0]
        assert notification.status == DeliveryStatus.ERROR.value
        assert notification.attempts == max_attempts
        assert notification.errorMessage == "Telegram unavailable"
