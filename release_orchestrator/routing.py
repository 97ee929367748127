"""Listener rule evaluation for the blue and green load balancer listeners."""

from __future__ import annotations

import ipaddress
from typing import Annotated, Iterable, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConfigurationError
from .models import EnvironmentName, RoutingRequest

MIN_PRIORITY = 1
MAX_PRIORITY = 50000
DENY_STATUS = 403
DENY_CONTENT_TYPE = "text/plain"
DENY_BODY = "Access denied"


def _parse_address(raw: Optional[str]) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    if not raw or not raw.strip():
        return None
    try:
        return ipaddress.ip_address(raw.strip())
    except ValueError:
        return None


class SourceIpCondition(BaseModel):
    """Matches requests whose source address falls inside one of the CIDRs."""

    kind: Literal["source-ip"] = "source-ip"
    cidrs: list[str]

    @field_validator("cidrs")
    @classmethod
    def _normalize_cidrs(cls, value: list[str]) -> list[str]:
        if not value:
            raise ConfigurationError("Source IP condition requires a non-empty allow-set")
        normalized: list[str] = []
        for raw in value:
            try:
                network = ipaddress.ip_network(str(raw).strip(), strict=False)
            except ValueError as exc:
                raise ConfigurationError(f"Malformed source CIDR {raw!r}") from exc
            normalized.append(str(network))
        return normalized

    def networks(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        return [ipaddress.ip_network(cidr) for cidr in self.cidrs]

    def matches(self, request: RoutingRequest) -> bool:
        address = _parse_address(request.source_ip)
        if address is None:
            return False
        return any(address in network for network in self.networks())


class PathPrefixCondition(BaseModel):
    """Matches requests whose path starts with the prefix."""

    kind: Literal["path-prefix"] = "path-prefix"
    prefix: str

    @field_validator("prefix")
    @classmethod
    def _require_leading_slash(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ConfigurationError(f"Path prefix must start with '/': {value!r}")
        return value

    def matches(self, request: RoutingRequest) -> bool:
        return (request.path or "/").startswith(self.prefix)


Condition = Annotated[Union[SourceIpCondition, PathPrefixCondition], Field(discriminator="kind")]


class ForwardAction(BaseModel):
    kind: Literal["forward"] = "forward"
    target_group: str


class FixedResponseAction(BaseModel):
    kind: Literal["fixed-response"] = "fixed-response"
    status_code: int = DENY_STATUS
    content_type: str = DENY_CONTENT_TYPE
    body: str = DENY_BODY


Action = Annotated[Union[ForwardAction, FixedResponseAction], Field(discriminator="kind")]


class ListenerRule(BaseModel):
    """A priority-ordered predicate-to-action binding."""

    priority: int
    conditions: list[Condition]
    action: Action

    def matches(self, request: RoutingRequest) -> bool:
        return all(condition.matches(request) for condition in self.conditions)


class RoutingDecision(BaseModel):
    """Result of evaluating a request against a listener."""

    listener: str
    priority: Optional[int] = None
    target_group: Optional[str] = None
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    body: Optional[str] = None

    @property
    def denied(self) -> bool:
        return self.target_group is None


class ListenerConfig(BaseModel):
    """Sorted rule list plus the sentinel default action of one listener."""

    name: str
    environment: EnvironmentName
    restricted: bool = False
    rules: list[ListenerRule] = Field(default_factory=list)
    default_action: Action

    @model_validator(mode="after")
    def _validate_rules(self) -> "ListenerConfig":
        seen: set[int] = set()
        for rule in self.rules:
            if not MIN_PRIORITY <= rule.priority <= MAX_PRIORITY:
                raise ConfigurationError(
                    f"Rule priority {rule.priority} on {self.name} outside "
                    f"{MIN_PRIORITY}..{MAX_PRIORITY}"
                )
            if rule.priority in seen:
                raise ConfigurationError(
                    f"Duplicate rule priority {rule.priority} on listener {self.name}"
                )
            seen.add(rule.priority)
            if not rule.conditions:
                raise ConfigurationError(
                    f"Rule {rule.priority} on {self.name} has no conditions; "
                    "only the default action may be unconditional"
                )
        if self.restricted:
            self._validate_restricted()
        self.rules = sorted(self.rules, key=lambda rule: rule.priority)
        return self

    def _validate_restricted(self) -> None:
        action = self.default_action
        if not isinstance(action, FixedResponseAction) or action.status_code != DENY_STATUS:
            raise ConfigurationError(
                f"Restricted listener {self.name} must deny unmatched requests with {DENY_STATUS}"
            )
        for rule in self.rules:
            ip_conditions = [c for c in rule.conditions if isinstance(c, SourceIpCondition)]
            if isinstance(rule.action, ForwardAction) and not ip_conditions:
                raise ConfigurationError(
                    f"Rule {rule.priority} on restricted listener {self.name} "
                    "forwards without a source IP condition"
                )
            for condition in ip_conditions:
                if any(network.prefixlen == 0 for network in condition.networks()):
                    raise ConfigurationError(
                        f"Allow-set on restricted listener {self.name} admits every address"
                    )

    @property
    def default_target_group(self) -> Optional[str]:
        if isinstance(self.default_action, ForwardAction):
            return self.default_action.target_group
        return None

    def with_default_target(self, target_group: str) -> "ListenerConfig":
        return self.model_copy(update={"default_action": ForwardAction(target_group=target_group)})

    def evaluate(self, request: RoutingRequest) -> RoutingDecision:
        """Return the action of the first matching rule, else the default."""
        for rule in self.rules:
            if rule.matches(request):
                return self._decision(rule.action, rule.priority)
        return self._decision(self.default_action, None)

    def _decision(self, action: ForwardAction | FixedResponseAction, priority: Optional[int]) -> RoutingDecision:
        if isinstance(action, ForwardAction):
            return RoutingDecision(
                listener=self.name, priority=priority, target_group=action.target_group
            )
        return RoutingDecision(
            listener=self.name,
            priority=priority,
            status_code=action.status_code,
            content_type=action.content_type,
            body=action.body,
        )


def allow_list_listener(
    *,
    name: str,
    environment: EnvironmentName,
    target_group: str,
    allowed_cidrs: Iterable[str],
    priority: int = 10,
) -> ListenerConfig:
    """Listener that forwards only allow-listed sources and denies the rest."""
    return ListenerConfig(
        name=name,
        environment=environment,
        restricted=True,
        rules=[
            ListenerRule(
                priority=priority,
                conditions=[SourceIpCondition(cidrs=list(allowed_cidrs))],
                action=ForwardAction(target_group=target_group),
            )
        ],
        default_action=FixedResponseAction(),
    )


def forwarding_listener(
    *, name: str, environment: EnvironmentName, target_group: str
) -> ListenerConfig:
    """Unrestricted listener whose default rule forwards to the live target group."""
    return ListenerConfig(
        name=name,
        environment=environment,
        default_action=ForwardAction(target_group=target_group),
    )
