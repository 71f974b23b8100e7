# tests/conftest.py
"""
Pytest configuration and shared fixtures for flow engine tests.

Every test gets a fresh in-memory SQLite database and a pinned clock.

Run:
    pytest tests/ -v
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from flow_system.actor import Actor
from flow_system.services.flow_service import FlowService
from flow_system.utils.time_machine import timeMachine
from models import Base, Project, ProjectCandidate, User
from models.listeners import register_all_listeners

# =============================================================================
# INITIALIZE CONFIG
# =============================================================================

Config.initialize_from_env()

# =============================================================================
# CONSTANTS
# =============================================================================

T0 = datetime(2026, 1, 1, 10, 0)

FLOW_CONFIG = {
    'registration_type': 'one_child_tree',
    'how_much_users_in_one_group': 3,
    'must_be_registered_from': T0,
    'time_for_registration': '2:00',
    'time_for_accept': '1:00',
    'comments': 'First wave',
    'auto_continue': False,
}

REFERRAL_DATA = {
    'referral_url': 'https://partner.example.com/ref/abc',
    'referral_name': 'Partner',
    'referral_login': 'partner_login',
}


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture
def engine():
    """Fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def frozen_time():
    """Pin the engine clock to T0."""
    timeMachine.setTime(T0)
    yield timeMachine
    timeMachine.resetToRealTime()


# =============================================================================
# ACTOR & SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def admin_user(session):
    user = User(firstname="Admin", surname="Root", telegramID=1, isAdmin=True)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def admin(admin_user):
    return Actor.admin(admin_user.userID)


@pytest.fixture
def service(session):
    return FlowService(session)


# =============================================================================
# FACTORY FIXTURES
# =============================================================================

@pytest.fixture
def make_user(session):
    """Create users with sequential telegram ids."""
    counter = {'next': 1000}

    def _make(firstname="User"):
        counter['next'] += 1
        user = User(
            firstname=f"{firstname}{counter['next']}",
            surname="Test",
            telegramID=counter['next']
        )
        session.add(user)
        session.flush()
        return user

    return _make


@pytest.fixture
def make_project(session, make_user):
    """
    Create an accepted project with a leader and N candidates.

    Returns (project, leader, candidates) where candidates are users
    in candidacy order.
    """

    def _make(candidates=5, name="Project"):
        leader = make_user("Leader")
        project = Project(name=name, status=Project.STATUS_ACCEPTED)
        session.add(project)
        session.flush()

        users = []
        for i in range(candidates):
            user = make_user("Candidate")
            session.add(ProjectCandidate(
                projectID=project.projectID,
                userID=user.userID,
                createdAt=T0 + timedelta(seconds=i)
            ))
            users.append(user)

        session.commit()
        return project, leader, users

    return _make


@pytest.fixture
def flow_config():
    """Admin form values with overrides."""

    def _make(leader, **overrides):
        config = dict(FLOW_CONFIG, leader_id=leader.userID)
        config.update(overrides)
        return config

    return _make


@pytest.fixture
def start_flow(service, make_project, flow_config, admin):
    """Create a project and start its flow; returns (flow, leader, candidates)."""

    def _start(candidates=5, **overrides):
        project, leader, users = make_project(candidates)
        flow = service.createAndStart(project, flow_config(leader, **overrides), admin)
        return flow, leader, users

    return _start


@pytest.fixture
def referral_data():
    return dict(REFERRAL_DATA)
