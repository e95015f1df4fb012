# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import pytest
from ngstream.sim.ngspice_common import NgspiceConfigError
from ngstream.sim.ngspice_ffi import NgspiceFFI
from ngstream.sim.session import StreamingSession, StreamSettings
from engine_helpers import FakeEngine

def pytest_configure(config):
    config.addinivalue_line("markers",
        "libngspice: test needs the ngspice shared library")

def _libngspice_available():
    try:
        NgspiceFFI.find_library()
    except NgspiceConfigError:
        return False
    return True

def pytest_collection_modifyitems(config, items):
    if _libngspice_available():
        return
    skip = pytest.mark.skip(reason="ngspice shared library not found")
    for item in items:
        if "libngspice" in item.keywords:
            item.add_marker(skip)

@pytest.fixture
def settings():
    return StreamSettings(poll_interval=0.002, startup_timeout=2.0, halt_timeout=1.0)

@pytest.fixture
def make_session(settings):
    """Returns a factory for initialized sessions on a FakeEngine."""
    sessions = []

    def make(engine=None, **overrides):
        engine = engine or FakeEngine()
        for key, value in overrides.items():
            setattr(settings, key, value)
        session = StreamingSession(lambda: engine, settings)
        session.initialize()
        sessions.append(session)
        return session, engine

    yield make
    for session in sessions:
        session.close()
