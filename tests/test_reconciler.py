"""Tests for the reconciler."""

import pytest

from rangesync.models import ContainerState
from rangesync.services.container_state_service import ContainerStateService
from rangesync.services.reconciler import Reconciler
from rangesync.services.runtime_driver import RuntimeAction, RuntimeDriverError


@pytest.fixture
def reconciler(fake_driver):
    return Reconciler(fake_driver, call_timeout=1.0)


class TestReconcileSuccess:
    """Test successful convergence."""

    @pytest.mark.asyncio
    async def test_start_stopped_container(self, db_session, reconciler, fake_driver, make_state):
        """A stopped container that should run is started and marked synced."""
        state = make_state()

        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.attempted
        assert outcome.success
        assert outcome.action == "start"
        assert state.current_status == "RUNNING"
        assert state.sync_status == "SYNCED"
        assert state.sync_attempts == 1
        assert state.sync_error is None
        assert len(fake_driver.calls) == 1
        assert fake_driver.calls[0][2] == RuntimeAction.START

    @pytest.mark.asyncio
    @pytest.mark.parametrize("desired,current,action", [
        ("RUNNING", "PAUSED", RuntimeAction.UNPAUSE),
        ("STOPPED", "RUNNING", RuntimeAction.STOP),
        ("PAUSED", "RUNNING", RuntimeAction.PAUSE),
        ("PAUSED", "STOPPED", RuntimeAction.START_AND_PAUSE),
    ])
    async def test_action_follows_desired_status(
        self, db_session, reconciler, fake_driver, make_state, desired, current, action
    ):
        state = make_state(desired_status=desired, current_status=current)

        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.success
        assert fake_driver.calls[0][2] == action
        assert state.current_status == desired
        assert state.sync_status == "SYNCED"

    @pytest.mark.asyncio
    async def test_restart_rewrites_goal_to_running(self, db_session, reconciler, fake_driver, make_state):
        """A restart is one-shot: afterwards the record wants RUNNING."""
        state = make_state(desired_status="RESTARTED", current_status="RUNNING")

        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.success
        assert fake_driver.calls[0][2] == RuntimeAction.RESTART
        assert state.desired_status == "RUNNING"
        assert state.current_status == "RUNNING"
        assert state.sync_status == "SYNCED"
        assert not state.needs_reconciliation()

    @pytest.mark.asyncio
    async def test_create_missing_container(self, db_session, reconciler, fake_driver, make_state):
        """A record without a container ID is deployed and gets the new ID."""
        state = make_state(container_id=None, current_status="UNKNOWN")

        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.success
        assert fake_driver.calls[0][2] == RuntimeAction.CREATE_AND_START
        assert fake_driver.calls[0][1].image_name == "nginx:1.25"
        assert state.container_id == "created-container"
        assert state.sync_status == "SYNCED"

    @pytest.mark.asyncio
    async def test_noop_when_not_needed(self, db_session, reconciler, fake_driver, make_state):
        state = make_state(current_status="RUNNING", sync_status="SYNCED")

        outcome = await reconciler.reconcile(db_session, state)

        assert not outcome.attempted
        assert outcome.success
        assert fake_driver.calls == []
        assert state.sync_attempts == 0


class TestReconcileFailure:
    """Test failure handling and the retry budget."""

    @pytest.mark.asyncio
    async def test_runtime_error_is_recorded(self, db_session, reconciler, fake_driver, make_state):
        fake_driver.fail_with = RuntimeDriverError("connection refused")
        state = make_state()

        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.attempted
        assert not outcome.success
        assert outcome.error == "connection refused"
        assert state.sync_status == "OUT_OF_SYNC"
        assert state.sync_error == "connection refused"
        assert state.sync_attempts == 1

    @pytest.mark.asyncio
    async def test_retry_bound(self, db_session, reconciler, fake_driver, make_state):
        """Three failed calls exhaust the budget; a fourth is a no-op."""
        fake_driver.fail_with = RuntimeDriverError("host down")
        state = make_state()

        statuses = []
        for _ in range(3):
            await reconciler.reconcile(db_session, state)
            statuses.append((state.sync_attempts, state.sync_status))

        assert statuses == [(1, "OUT_OF_SYNC"), (2, "OUT_OF_SYNC"), (3, "FAILED")]
        assert not state.needs_reconciliation()

        outcome = await reconciler.reconcile(db_session, state)
        assert not outcome.attempted
        assert len(fake_driver.calls) == 3

    @pytest.mark.asyncio
    async def test_failure_reset_then_success(self, db_session, reconciler, fake_driver, make_state):
        """Fail three times, reset, then converge on the fourth attempt."""
        fake_driver.fail_with = RuntimeDriverError("host down")
        state = make_state()
        for _ in range(3):
            await reconciler.reconcile(db_session, state)
        assert state.sync_status == "FAILED"

        ContainerStateService().reset_failed_states(db_session)
        assert (state.sync_attempts, state.sync_status) == (0, "OUT_OF_SYNC")

        fake_driver.fail_with = None
        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.success
        assert state.current_status == "RUNNING"
        assert state.sync_status == "SYNCED"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, db_session, reconciler, fake_driver, make_state):
        fake_driver.fail_with = KeyError("State")
        state = make_state()

        outcome = await reconciler.reconcile(db_session, state)

        assert not outcome.success
        assert "KeyError" in state.sync_error

    @pytest.mark.asyncio
    async def test_timeout(self, db_session, fake_driver, make_state):
        fake_driver.delay = 1.0
        reconciler = Reconciler(fake_driver, call_timeout=0.01)
        state = make_state()

        outcome = await reconciler.reconcile(db_session, state)

        assert not outcome.success
        assert "timed out" in state.sync_error
        assert state.sync_status == "OUT_OF_SYNC"

    @pytest.mark.asyncio
    async def test_status_mismatch_after_action(self, db_session, reconciler, fake_driver, make_state):
        """A successful call whose read-back disagrees still counts as a failure."""
        fake_driver.result_status = "STOPPED"
        state = make_state()

        outcome = await reconciler.reconcile(db_session, state)

        assert not outcome.success
        assert state.sync_status == "OUT_OF_SYNC"
        assert "expected RUNNING" in state.sync_error

    @pytest.mark.asyncio
    async def test_missing_host(self, db_session, reconciler, fake_driver, make_state):
        state = make_state(host_node_id=99)

        outcome = await reconciler.reconcile(db_session, state)

        assert not outcome.success
        assert state.sync_error == "Host node 99 is not available"
        assert state.sync_attempts == 1
        assert fake_driver.calls == []

    @pytest.mark.asyncio
    async def test_inactive_host(self, db_session, reconciler, fake_driver, host, make_state):
        host.is_active = False
        db_session.commit()
        state = make_state()

        outcome = await reconciler.reconcile(db_session, state)

        assert not outcome.success
        assert state.sync_error == f"Host node {host.id} is not available"
        assert fake_driver.calls == []


class TestReconcileSuperseded:
    """Test goal changes that land while a call is in flight."""

    @pytest.mark.asyncio
    async def test_new_goal_during_call_is_kept(self, db_session, reconciler, fake_driver, make_state):
        state = make_state()

        def change_goal():
            state.set_desired_status("STOPPED")
            db_session.commit()

        fake_driver.on_apply = change_goal

        outcome = await reconciler.reconcile(db_session, state)

        assert outcome.superseded
        assert not outcome.success
        assert state.desired_status == "STOPPED"
        assert state.current_status == "RUNNING"
        assert state.sync_status == "OUT_OF_SYNC"
        assert state.sync_attempts == 0
        assert state.needs_reconciliation()

    @pytest.mark.asyncio
    async def test_syncing_is_committed_before_the_call(self, db_session, session_factory, reconciler, fake_driver, make_state):
        state = make_state()
        seen = {}

        def inspect_store():
            other = session_factory()
            try:
                stored = other.query(ContainerState).filter(ContainerState.id == state.id).one()
                seen["sync_status"] = stored.sync_status
                seen["sync_attempts"] = stored.sync_attempts
            finally:
                other.close()

        fake_driver.on_apply = inspect_store

        await reconciler.reconcile(db_session, state)

        assert seen == {"sync_status": "SYNCING", "sync_attempts": 1}
