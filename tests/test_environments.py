import pytest

from conftest import make_settings
from release_orchestrator.environments import (
    PRODUCTION_TARGET_GROUPS,
    assert_parity,
    build_topology,
    validate_deployment_group,
)
from release_orchestrator.errors import ConfigurationError
from release_orchestrator.models import DeploymentGroup, Environment, RoutingRequest


def test_topology_from_settings(tmp_path):
    topology = build_topology(make_settings(tmp_path))

    assert topology.blue.shape() == topology.green.shape()
    assert topology.blue.cpu == 256
    assert topology.blue.memory_mib == 512
    assert topology.blue.container_name == "web"
    assert set(topology.target_groups) == {"blue-a", "blue-b", "green"}
    assert topology.target_groups["green"].environment == "green"
    assert topology.deployment_group.target_groups == PRODUCTION_TARGET_GROUPS
    assert topology.production_listener.default_target_group == "blue-a"
    assert topology.staging_listener.restricted


def test_staging_listener_uses_configured_allow_set(tmp_path):
    topology = build_topology(
        make_settings(tmp_path, allowed_source_cidrs=("1.2.3.4/32", "10.0.0.0/8"))
    )
    listener = topology.staging_listener
    assert listener.evaluate(RoutingRequest(source_ip="10.9.9.9")).target_group == "green"
    assert listener.evaluate(RoutingRequest(source_ip="9.9.9.9")).denied


def test_allow_all_staging_configuration_fails_closed(tmp_path):
    with pytest.raises(ConfigurationError):
        build_topology(make_settings(tmp_path, allowed_source_cidrs=("0.0.0.0/0",)))


def test_parity_violation_names_the_differences():
    blue = Environment(name="blue", cpu=256, memory_mib=512)
    green = Environment(name="green", cpu=512, memory_mib=512, container_port=8080)
    with pytest.raises(ConfigurationError) as excinfo:
        assert_parity(blue, green)
    assert "container_port" in str(excinfo.value)
    assert "cpu" in str(excinfo.value)


def test_parity_ignores_image():
    assert_parity(
        Environment(name="blue", image="app:abc1234"),
        Environment(name="green", image="app:def5678"),
    )


def test_deployment_group_must_roll_back_automatically(tmp_path):
    topology = build_topology(make_settings(tmp_path))
    group = DeploymentGroup(
        name="blue-dg",
        environment="blue",
        listener="blue-http",
        target_groups=("blue-a", "blue-b"),
        auto_rollback=False,
    )
    with pytest.raises(ConfigurationError):
        validate_deployment_group(group, topology.target_groups)


def test_deployment_group_target_groups_must_belong_to_environment(tmp_path):
    topology = build_topology(make_settings(tmp_path))
    group = DeploymentGroup(
        name="blue-dg", environment="blue", listener="blue-http", target_groups=("blue-a", "green")
    )
    with pytest.raises(ConfigurationError):
        validate_deployment_group(group, topology.target_groups)


def test_counterpart_swaps_roles():
    group = DeploymentGroup(
        name="blue-dg", environment="blue", listener="blue-http", target_groups=("blue-a", "blue-b")
    )
    assert group.counterpart("blue-a") == "blue-b"
    assert group.counterpart("blue-b") == "blue-a"
    with pytest.raises(ValueError):
        group.counterpart("green")
