import pytest
from pydantic import ValidationError

from release_orchestrator.errors import ConfigurationError
from release_orchestrator.models import RoutingRequest
from release_orchestrator.routing import (
    FixedResponseAction,
    ForwardAction,
    ListenerConfig,
    ListenerRule,
    PathPrefixCondition,
    SourceIpCondition,
    allow_list_listener,
    forwarding_listener,
)


def staging_listener(cidrs=("1.2.3.4/32",)):
    return allow_list_listener(
        name="green-http", environment="green", target_group="green", allowed_cidrs=cidrs
    )


def test_allow_listed_source_is_forwarded():
    decision = staging_listener().evaluate(RoutingRequest(source_ip="1.2.3.4"))
    assert decision.target_group == "green"
    assert decision.priority == 10
    assert not decision.denied


def test_other_sources_get_access_denied():
    decision = staging_listener().evaluate(RoutingRequest(source_ip="9.9.9.9"))
    assert decision.denied
    assert decision.priority is None
    assert decision.status_code == 403
    assert decision.content_type == "text/plain"
    assert decision.body == "Access denied"


def test_cidr_boundaries_are_exact():
    listener = staging_listener(("10.0.0.0/24",))
    assert listener.evaluate(RoutingRequest(source_ip="10.0.0.0")).target_group == "green"
    assert listener.evaluate(RoutingRequest(source_ip="10.0.0.255")).target_group == "green"
    assert listener.evaluate(RoutingRequest(source_ip="10.0.1.0")).denied
    assert listener.evaluate(RoutingRequest(source_ip="9.255.255.255")).denied


@pytest.mark.parametrize("source_ip", [None, "", "not-an-ip", "1.2.3.4.5"])
def test_missing_or_unparsable_source_never_matches(source_ip):
    decision = staging_listener().evaluate(RoutingRequest(source_ip=source_ip))
    assert decision.denied


def test_host_bits_in_cidrs_are_normalized():
    condition = SourceIpCondition(cidrs=["192.168.1.17/24"])
    assert condition.cidrs == ["192.168.1.0/24"]


def test_ipv6_allow_set():
    listener = staging_listener(("2001:db8::/32",))
    assert listener.evaluate(RoutingRequest(source_ip="2001:db8::1")).target_group == "green"
    assert listener.evaluate(RoutingRequest(source_ip="2001:db9::1")).denied


def test_empty_allow_set_is_rejected():
    with pytest.raises(ConfigurationError):
        staging_listener(())


def test_malformed_allow_set_is_rejected():
    with pytest.raises(ConfigurationError):
        staging_listener(("1.2.3.400/32",))


def test_restricted_listener_refuses_allow_all():
    with pytest.raises(ConfigurationError):
        staging_listener(("0.0.0.0/0",))


def test_duplicate_priorities_are_rejected():
    rule = ListenerRule(
        priority=10,
        conditions=[PathPrefixCondition(prefix="/a")],
        action=ForwardAction(target_group="blue-a"),
    )
    with pytest.raises(ConfigurationError):
        ListenerConfig(
            name="blue-http",
            environment="blue",
            rules=[rule, rule.model_copy()],
            default_action=ForwardAction(target_group="blue-a"),
        )


@pytest.mark.parametrize("priority", [0, 50001])
def test_priority_must_be_in_range(priority):
    with pytest.raises(ConfigurationError):
        ListenerConfig(
            name="blue-http",
            environment="blue",
            rules=[
                ListenerRule(
                    priority=priority,
                    conditions=[PathPrefixCondition(prefix="/")],
                    action=ForwardAction(target_group="blue-a"),
                )
            ],
            default_action=ForwardAction(target_group="blue-a"),
        )


def test_unconditional_rules_are_rejected():
    with pytest.raises(ConfigurationError):
        ListenerConfig(
            name="blue-http",
            environment="blue",
            rules=[ListenerRule(priority=1, conditions=[], action=ForwardAction(target_group="x"))],
            default_action=ForwardAction(target_group="blue-a"),
        )


def test_default_action_is_required():
    with pytest.raises(ValidationError):
        ListenerConfig(name="blue-http", environment="blue")


def test_restricted_listener_must_deny_by_default():
    with pytest.raises(ConfigurationError):
        ListenerConfig(
            name="green-http",
            environment="green",
            restricted=True,
            rules=[
                ListenerRule(
                    priority=10,
                    conditions=[SourceIpCondition(cidrs=["1.2.3.4/32"])],
                    action=ForwardAction(target_group="green"),
                )
            ],
            default_action=ForwardAction(target_group="green"),
        )


def test_restricted_forward_rules_need_source_condition():
    with pytest.raises(ConfigurationError):
        ListenerConfig(
            name="green-http",
            environment="green",
            restricted=True,
            rules=[
                ListenerRule(
                    priority=10,
                    conditions=[PathPrefixCondition(prefix="/")],
                    action=ForwardAction(target_group="green"),
                )
            ],
            default_action=FixedResponseAction(),
        )


def test_lowest_priority_match_wins_regardless_of_declaration_order():
    listener = ListenerConfig(
        name="green-http",
        environment="green",
        restricted=True,
        rules=[
            ListenerRule(
                priority=20,
                conditions=[SourceIpCondition(cidrs=["10.0.0.0/8"])],
                action=ForwardAction(target_group="green"),
            ),
            ListenerRule(
                priority=5,
                conditions=[
                    SourceIpCondition(cidrs=["10.1.0.0/16"]),
                    PathPrefixCondition(prefix="/admin"),
                ],
                action=FixedResponseAction(status_code=403, body="Admin closed"),
            ),
        ],
        default_action=FixedResponseAction(),
    )
    assert [rule.priority for rule in listener.rules] == [5, 20]

    admin = listener.evaluate(RoutingRequest(source_ip="10.1.2.3", path="/admin/users"))
    assert admin.priority == 5
    assert admin.body == "Admin closed"

    # Every condition of a rule must match.
    other = listener.evaluate(RoutingRequest(source_ip="10.1.2.3", path="/shop"))
    assert other.priority == 20
    assert other.target_group == "green"


def test_forwarding_listener_repoint_keeps_rules():
    listener = forwarding_listener(name="blue-http", environment="blue", target_group="blue-a")
    assert listener.default_target_group == "blue-a"
    repointed = listener.with_default_target("blue-b")
    assert repointed.default_target_group == "blue-b"
    assert listener.default_target_group == "blue-a"
    assert repointed.evaluate(RoutingRequest(source_ip="8.8.8.8")).target_group == "blue-b"


def test_listener_survives_json_storage():
    listener = staging_listener(("1.2.3.4/32", "10.0.0.0/8"))
    restored = ListenerConfig.model_validate_json(listener.model_dump_json())
    assert restored == listener
    assert restored.evaluate(RoutingRequest(source_ip="10.2.3.4")).target_group == "green"
