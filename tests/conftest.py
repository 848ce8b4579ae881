"""
Shared pytest fixtures for the onboarding engine test suite.
Every fixture runs on the in-memory adapter with a fake clock.
Factory helpers live in tests/factories.py so they can be imported
directly by test modules as well as being used here.
"""
import sys
import os

_tests_dir = os.path.dirname(__file__)
_src_dir   = os.path.join(_tests_dir, "..", "src")
for _p in (_tests_dir, _src_dir):
    if _p not in sys.path:
        sys.path.insert(0, _p)


import pytest

from factories import FakeClock, RecordingSink, make_engine, make_path


# ─── pytest fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(tmp_path, clock, sink):
    return make_engine(tmp_path, clock=clock, analytics=sink)


@pytest.fixture
def abc_path(engine):
    """Published path: required A, B (B after A), optional C."""
    return engine.paths.publish_path(make_path())


@pytest.fixture
def session(engine, abc_path):
    return engine.store.start_session("user_1", abc_path.path_id, {"role": "default"})


@pytest.fixture
def seeded(engine):
    engine.seed_default_paths()
    return engine
