"""
Unit tests for background operations and cancellation.
"""
import threading

import pytest

from dockhand.errors import OperationCancelledError, PreconditionError
from dockhand.MANAGERS.operations import CancellationToken
from dockhand.MODELS.entities import ContainerState


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel_before_dispatch(self):
        token = CancellationToken()
        assert token.cancel() is True
        with pytest.raises(OperationCancelledError):
            token.mark_dispatched()
        assert not token.dispatched

    def test_cancel_after_dispatch(self):
        token = CancellationToken()
        token.mark_dispatched()
        assert token.cancel() is False
        assert token.dispatched
        assert not token.cancelled


class TestDispatcher:
    """Tests for OperationDispatcher through a session."""

    def test_submit_and_wait(self, session, nginx):
        cid = session.submit("create", nginx).result(timeout=5)
        assert session.submit("start", cid).result(timeout=5) == ContainerState.RUNNING
        assert session.controller.get(cid).state == ContainerState.RUNNING

    def test_errors_are_reraised(self, session, nginx):
        cid = session.controller.create(nginx)
        op = session.submit("stop", cid)
        with pytest.raises(PreconditionError):
            op.result(timeout=5)

    def test_unknown_operation(self, session):
        with pytest.raises(ValueError):
            session.submit("explode", "x")

    def test_cancel_pending_operation(self, session, engine, nginx):
        """An operation waiting for its container's lock can still be cancelled."""
        cid = session.controller.create(nginx)
        entered = threading.Event()
        release = threading.Event()

        def block(container_id):
            entered.set()
            release.wait(timeout=5)

        engine.hook("start", block)
        first = session.submit("start", cid)
        assert entered.wait(timeout=5)

        second = session.submit("stop", cid)
        assert second.cancel() is True
        release.set()

        assert first.result(timeout=5) == ContainerState.RUNNING
        with pytest.raises(OperationCancelledError):
            second.result(timeout=5)
        assert engine.call_count("stop") == 0
        assert session.controller.get(cid).state == ContainerState.RUNNING

    def test_cannot_cancel_dispatched_operation(self, session, engine, nginx):
        """Once the engine call has begun the operation runs to completion."""
        cid = session.controller.create(nginx)
        entered = threading.Event()
        release = threading.Event()

        def block(container_id):
            entered.set()
            release.wait(timeout=5)

        engine.hook("start", block)
        op = session.submit("start", cid)
        assert entered.wait(timeout=5)
        assert op.dispatched
        assert op.cancel() is False
        release.set()
        assert op.result(timeout=5) == ContainerState.RUNNING
