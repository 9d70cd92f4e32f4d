"""Tests for the discovery service."""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from rangesync.models import ContainerDiscoveryRecord, HostNode
from rangesync.services.discovery_service import DiscoveryService, is_container_suitable
from rangesync.services.encryption_service import EncryptionService
from rangesync.services.host_node_service import HostNodeService
from rangesync.services.runtime_driver import ContainerObservation


def observation(container_id, status="running", name=None, image="nginx:1.25", host_node_id=None, **kwargs):
    return ContainerObservation(
        container_id=container_id,
        name=name or f"name-{container_id}",
        image=image,
        status=status,
        host_node_id=host_node_id,
        **kwargs,
    )


def stored_ids(db_session, scope_id):
    db_session.expire_all()
    return {
        record.container_id
        for record in db_session.query(ContainerDiscoveryRecord)
        .filter(ContainerDiscoveryRecord.scope_id == scope_id)
        .all()
    }


@pytest.fixture
def discovery(fake_driver):
    return DiscoveryService(fake_driver, HostNodeService(EncryptionService()))


class TestDiff:
    """Test the incremental inventory diff."""

    def test_adds_into_empty_scope(self, db_session, discovery):
        result = discovery.diff(db_session, "lab", [observation("a"), observation("b")])

        assert sorted(result.added) == ["a", "b"]
        assert result.updated == []
        assert result.removed == []

        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        assert record.discovered_at is not None
        assert record.discovered_at == record.last_seen_at

    def test_add_update_remove(self, db_session, discovery):
        """The stored set becomes exactly the observed set."""
        discovery.diff(db_session, "lab", [observation("a"), observation("b"), observation("c")])

        result = discovery.diff(
            db_session,
            "lab",
            [observation("a"), observation("b", status="exited"), observation("d")],
        )

        assert result.added == ["d"]
        assert result.updated == ["b"]
        assert result.removed == ["c"]
        assert stored_ids(db_session, "lab") == {"a", "b", "d"}

        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="b").one()
        assert record.status == "exited"

    def test_unchanged_record_refreshes_last_seen(self, db_session, discovery):
        discovery.diff(db_session, "lab", [observation("a")])
        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        earlier = datetime.utcnow() - timedelta(hours=1)
        record.last_seen_at = earlier
        record.discovered_at = earlier
        db_session.commit()

        result = discovery.diff(db_session, "lab", [observation("a")])

        assert not result.has_changes
        db_session.expire_all()
        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        assert record.last_seen_at > earlier
        assert record.discovered_at == earlier

    @pytest.mark.parametrize("field,value", [
        ("name", "renamed"),
        ("image", "nginx:1.27"),
        ("ports", '[{"PrivatePort": 80}]'),
        ("labels", '{"team": "red"}'),
    ])
    def test_each_tracked_field_marks_update(self, db_session, discovery, field, value):
        first_seen = observation("a", name="web")
        discovery.diff(db_session, "lab", [first_seen])

        result = discovery.diff(db_session, "lab", [replace(first_seen, **{field: value})])

        assert result.updated == ["a"]

    def test_empty_observation_clears_scope(self, db_session, discovery):
        discovery.diff(db_session, "lab", [observation("a"), observation("b")])

        result = discovery.diff(db_session, "lab", [])

        assert sorted(result.removed) == ["a", "b"]
        assert stored_ids(db_session, "lab") == set()

    def test_other_scopes_untouched(self, db_session, discovery):
        discovery.diff(db_session, "other", [observation("x")])

        discovery.diff(db_session, "lab", [observation("a")])
        discovery.diff(db_session, "lab", [])

        assert stored_ids(db_session, "other") == {"x"}

    def test_duplicate_ids_last_wins(self, db_session, discovery, caplog):
        result = discovery.diff(
            db_session,
            "lab",
            [observation("a", status="running"), observation("a", status="paused")],
        )

        assert result.added == ["a"]
        assert result.duplicates == ["a"]
        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        assert record.status == "paused"
        assert "Duplicate container a" in caplog.text

    def test_empty_ids_ignored(self, db_session, discovery):
        result = discovery.diff(db_session, "lab", [observation(""), observation("a")])

        assert result.added == ["a"]
        assert stored_ids(db_session, "lab") == {"a"}

    def test_asset_links_are_stored(self, db_session, discovery):
        discovery.diff(
            db_session,
            "lab",
            [observation("a")],
            asset_links={"a": {"asset_id": 7, "asset_ip": "10.0.0.5"}},
        )

        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        assert record.asset_id == 7
        assert record.asset_ip == "10.0.0.5"


class TestContainerSuitability:
    """Test filtering of runtime system containers."""

    @pytest.mark.parametrize("name,image,expected", [
        ("web", "nginx:1.25", True),
        ("k8s_pause_abc", "busybox", False),
        ("K8S_COREDNS_1", "coredns", False),
        ("docker-desktop-helper", "alpine", False),
        ("com.docker.extension", "alpine", False),
        ("sandbox", "k8s.gcr.io/pause:3.2", False),
        ("sandbox", "registry.k8s.io/pause:3.9", False),
        (None, None, True),
    ])
    def test_is_container_suitable(self, name, image, expected):
        assert is_container_suitable(ContainerObservation(container_id="x", name=name, image=image)) is expected


class TestProbeScope:
    """Test probe orchestration across the hosts of a scope."""

    @pytest.fixture
    def second_host(self, db_session):
        node = HostNode(name="node-2", docker_api_url="http://10.0.0.6:2375", scope_id="lab")
        db_session.add(node)
        db_session.commit()
        return node

    @pytest.mark.asyncio
    async def test_successful_probe(self, db_session, discovery, fake_driver, host, second_host):
        fake_driver.containers = {
            host.id: [
                observation("a", host_node_id=host.id),
                observation("pause", name="k8s_pause_x", host_node_id=host.id),
            ],
            second_host.id: [observation("b", host_node_id=second_host.id)],
        }

        result = await discovery.probe_scope(db_session, "lab")

        assert result.success
        assert result.hosts_probed == 2
        assert result.containers_observed == 2
        assert sorted(result.diff.added) == ["a", "b"]
        assert stored_ids(db_session, "lab") == {"a", "b"}
        assert host.probe_status == "success"
        assert host.last_probed_at is not None

        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        assert record.asset_ip == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_failed_host_leaves_inventory_untouched(self, db_session, discovery, fake_driver, host, second_host):
        """A partial probe must not be read as removals."""
        discovery.diff(db_session, "lab", [observation("a"), observation("b")])
        fake_driver.containers = {host.id: [observation("a", host_node_id=host.id)]}
        fake_driver.probe_errors = {second_host.id: "connection refused"}

        result = await discovery.probe_scope(db_session, "lab")

        assert not result.success
        assert result.diff is None
        assert result.errors == {"node-2": "connection refused"}
        assert stored_ids(db_session, "lab") == {"a", "b"}
        assert second_host.probe_status == "failed"
        assert second_host.probe_error == "connection refused"
        assert host.probe_status == "success"

    @pytest.mark.asyncio
    async def test_unscoped_host_is_its_own_scope(self, db_session, discovery, fake_driver):
        node = HostNode(name="solo", docker_api_url="http://10.0.0.9:2375")
        db_session.add(node)
        db_session.commit()
        fake_driver.containers = {node.id: [observation("s", host_node_id=node.id)]}

        result = await discovery.probe_scope(db_session, f"host-{node.id}")

        assert result.success
        assert stored_ids(db_session, f"host-{node.id}") == {"s"}

    @pytest.mark.asyncio
    async def test_empty_scope(self, db_session, discovery):
        result = await discovery.probe_scope(db_session, "nowhere")

        assert not result.success
        assert "No active host nodes" in result.errors["nowhere"]

    @pytest.mark.asyncio
    async def test_observations_update_container_states(self, db_session, discovery, fake_driver, host, make_state):
        """Discovery records what it sees without reconciling."""
        synced = make_state(container_id="a", desired_status="RUNNING", current_status="RUNNING", sync_status="SYNCED")
        drifting = make_state(container_id="b", desired_status="STOPPED", current_status="UNKNOWN")
        fake_driver.containers = {
            host.id: [
                observation("a", status="exited", host_node_id=host.id),
                observation("b", status="exited", host_node_id=host.id, health="healthy"),
            ],
        }

        await discovery.probe_scope(db_session, "lab")

        assert synced.current_status == "STOPPED"
        assert synced.sync_status == "OUT_OF_SYNC"
        assert drifting.current_status == "STOPPED"
        assert drifting.sync_status == "SYNCED"
        assert drifting.health_status == "healthy"
        assert fake_driver.calls == []

        record = db_session.query(ContainerDiscoveryRecord).filter_by(container_id="a").one()
        assert record.asset_id == 1
