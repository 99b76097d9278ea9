"""Unit tests for AccountReconciler and ReconciliationDriver.

Covers the per-target failure isolation of a reconciliation pass and the
baseline / change / no-change transitions of the driver.
"""

import threading
from typing import Dict, List, Optional, Set, Tuple

from cloud_whitelist_manager.aliyun import AccountAdapters, MembershipAdapter, RuleAdapter
from cloud_whitelist_manager.config import (
    Account,
    CommandSource,
    InstanceWhitelistTarget,
    LoadBalancerAclTarget,
    ResourceConfig,
    SecurityGroupTarget,
)
from cloud_whitelist_manager.errors import (
    GroupNotFoundError,
    ProviderCallError,
    SourceExhaustedError,
)
from cloud_whitelist_manager.reconciler import (
    AccountReconciler,
    ReconciliationDriver,
    TargetOutcome,
    added_targets,
    count_targets,
)

# =============================================================================
# Mock Adapters
# =============================================================================


class MockRuleAdapter(RuleAdapter):
    """In-memory security group rules with call tracking."""

    def __init__(self, failing: Set[str] | None = None):
        self.rules: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple[str, str, str]] = []
        self._failing = failing or set()

    @property
    def name(self) -> str:
        return "ECS"

    def revoke(self, ip: str, target: SecurityGroupTarget) -> None:
        self.calls.append(("revoke", ip, target.security_group_id))
        if target.security_group_id in self._failing:
            raise ProviderCallError(f"revoke failed on {target.security_group_id}")
        self.rules.discard((target.security_group_id, ip))

    def authorize(self, ip: str, target: SecurityGroupTarget) -> None:
        self.calls.append(("authorize", ip, target.security_group_id))
        if target.security_group_id in self._failing:
            raise ProviderCallError(f"authorize failed on {target.security_group_id}")
        self.rules.add((target.security_group_id, ip))


class MockMembershipAdapter(MembershipAdapter):
    """In-memory whitelists keyed by target label."""

    def __init__(
        self,
        kind: str,
        whitelists: Dict[str, Set[str]] | None = None,
        failing_fetch: Set[str] | None = None,
        failing_replace: Set[str] | None = None,
        missing_groups: Set[str] | None = None,
    ):
        self._kind = kind
        self.whitelists = whitelists or {}
        self.calls: List[Tuple[str, str]] = []
        self._failing_fetch = failing_fetch or set()
        self._failing_replace = failing_replace or set()
        self._missing_groups = missing_groups or set()

    @property
    def name(self) -> str:
        return self._kind

    def fetch(self, target) -> Set[str]:
        key = target.describe()
        self.calls.append(("fetch", key))
        if key in self._missing_groups:
            raise GroupNotFoundError("default", key, self._kind)
        if key in self._failing_fetch:
            raise ProviderCallError(f"fetch failed on {key}")
        return set(self.whitelists.get(key, set()))

    def replace(self, target, members: Set[str]) -> None:
        key = target.describe()
        self.calls.append(("replace", key))
        if key in self._failing_replace:
            raise ProviderCallError(f"replace failed on {key}")
        self.whitelists[key] = set(members)


# =============================================================================
# Test Helpers
# =============================================================================


def make_account(
    name: str = "prod",
    security_groups: List[SecurityGroupTarget] | None = None,
    rds: List[InstanceWhitelistTarget] | None = None,
    redis: List[InstanceWhitelistTarget] | None = None,
    clb: List[LoadBalancerAclTarget] | None = None,
) -> Account:
    def section(targets) -> ResourceConfig:
        return ResourceConfig(enabled=bool(targets), targets=tuple(targets or ()))

    return Account(
        name=name,
        access_key_id="key",
        access_key_secret="secret",
        region_id="cn-hangzhou",
        ecs=section(security_groups),
        rds=section(rds),
        redis=section(redis),
        clb=section(clb),
    )


def make_adapters(
    ecs: MockRuleAdapter | None = None,
    rds: MockMembershipAdapter | None = None,
    redis: MockMembershipAdapter | None = None,
    clb: MockMembershipAdapter | None = None,
) -> AccountAdapters:
    return AccountAdapters(
        ecs=ecs or MockRuleAdapter(),
        rds=rds or MockMembershipAdapter("RDS"),
        redis=redis or MockMembershipAdapter("Redis"),
        clb=clb or MockMembershipAdapter("CLB"),
    )


class RecordingReconciler:
    """Stands in for AccountReconciler and records the IP pairs it receives."""

    def __init__(self, name: str = "prod", fail: bool = False):
        self.name = name
        self.account = make_account(name)
        self.calls: List[Tuple[Optional[str], Optional[str]]] = []
        self._fail = fail

    def reconcile(self, old_ip: Optional[str], new_ip: Optional[str]) -> List[TargetOutcome]:
        self.calls.append((old_ip, new_ip))
        if self._fail:
            raise RuntimeError("client exploded")
        return [TargetOutcome(self.name, "RDS", "rm-1/default", success=True)]


class SequenceResolver:
    """Returns queued results (IP strings or exceptions) one per call."""

    def __init__(self, *results):
        self._results = list(results)
        self.calls = 0

    def __call__(self, sources) -> str:
        self.calls += 1
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


SOURCES = (CommandSource(cmd="echo 1.2.3.4"),)

# =============================================================================
# AccountReconciler
# =============================================================================


def test_membership_targets_swap_old_ip_for_new_ip() -> None:
    target = InstanceWhitelistTarget("rm-1", "default")
    rds = MockMembershipAdapter("RDS", whitelists={"rm-1/default": {"127.0.0.1", "1.2.3.4"}})
    reconciler = AccountReconciler(make_account(rds=[target]), make_adapters(rds=rds))

    outcomes = reconciler.reconcile("1.2.3.4", "5.6.7.8")

    assert rds.whitelists["rm-1/default"] == {"127.0.0.1", "5.6.7.8"}
    assert rds.calls == [("fetch", "rm-1/default"), ("replace", "rm-1/default")]
    assert outcomes == [TargetOutcome("prod", "RDS", "rm-1/default", success=True)]


def test_security_group_revokes_old_then_authorizes_new() -> None:
    target = SecurityGroupTarget("sg-1", "22", 1)
    ecs = MockRuleAdapter()
    reconciler = AccountReconciler(make_account(security_groups=[target]), make_adapters(ecs=ecs))

    reconciler.reconcile("1.2.3.4", "5.6.7.8")

    assert ecs.calls == [("revoke", "1.2.3.4", "sg-1"), ("authorize", "5.6.7.8", "sg-1")]


def test_security_group_without_old_ip_only_authorizes() -> None:
    target = SecurityGroupTarget("sg-1", "22", 1)
    ecs = MockRuleAdapter()
    reconciler = AccountReconciler(make_account(security_groups=[target]), make_adapters(ecs=ecs))

    reconciler.reconcile(None, "5.6.7.8")

    assert ecs.calls == [("authorize", "5.6.7.8", "sg-1")]


def test_failure_on_one_target_does_not_stop_sibling() -> None:
    """Two targets of one kind: one fails, one succeeds, both attempted in order."""
    first = InstanceWhitelistTarget("rm-1", "default")
    second = InstanceWhitelistTarget("rm-2", "default")
    rds = MockMembershipAdapter("RDS", failing_replace={"rm-1/default"})
    reconciler = AccountReconciler(make_account(rds=[first, second]), make_adapters(rds=rds))

    outcomes = reconciler.reconcile(None, "5.6.7.8")

    assert [o.target for o in outcomes] == ["rm-1/default", "rm-2/default"]
    assert [o.success for o in outcomes] == [False, True]
    assert "replace failed on rm-1/default" in outcomes[0].error
    assert rds.whitelists["rm-2/default"] == {"5.6.7.8"}


def test_failure_in_one_kind_does_not_stop_other_kinds() -> None:
    ecs = MockRuleAdapter(failing={"sg-1"})
    redis = MockMembershipAdapter("Redis")
    clb = MockMembershipAdapter("CLB", whitelists={"acl-1": {"1.2.3.4"}})
    account = make_account(
        security_groups=[SecurityGroupTarget("sg-1", "22", 1)],
        redis=[InstanceWhitelistTarget("r-1", "default")],
        clb=[LoadBalancerAclTarget("acl-1")],
    )
    reconciler = AccountReconciler(account, make_adapters(ecs=ecs, redis=redis, clb=clb))

    outcomes = reconciler.reconcile("1.2.3.4", "5.6.7.8")

    assert [(o.kind, o.success) for o in outcomes] == [
        ("ECS", False),
        ("Redis", True),
        ("CLB", True),
    ]
    assert clb.whitelists["acl-1"] == {"5.6.7.8"}


def test_missing_group_is_reported_and_replace_skipped() -> None:
    rds = MockMembershipAdapter("RDS", missing_groups={"rm-1/default"})
    account = make_account(rds=[InstanceWhitelistTarget("rm-1", "default")])
    reconciler = AccountReconciler(account, make_adapters(rds=rds))

    outcomes = reconciler.reconcile(None, "5.6.7.8")

    assert outcomes[0].success is False
    assert "whitelist group default not found" in outcomes[0].error
    assert rds.calls == [("fetch", "rm-1/default")]


def test_unexpected_exception_is_isolated_per_target() -> None:
    class BrokenAdapter(MockMembershipAdapter):
        def fetch(self, target):
            if target.instance_id == "rm-1":
                raise KeyError("Items")
            return super().fetch(target)

    rds = BrokenAdapter("RDS")
    account = make_account(
        rds=[InstanceWhitelistTarget("rm-1", "default"), InstanceWhitelistTarget("rm-2", "default")]
    )
    outcomes = AccountReconciler(account, make_adapters(rds=rds)).reconcile(None, "5.6.7.8")

    assert [o.success for o in outcomes] == [False, True]


def test_disabled_kinds_are_skipped() -> None:
    rds = MockMembershipAdapter("RDS")
    account = Account(
        name="prod",
        access_key_id="key",
        access_key_secret="secret",
        region_id="cn-hangzhou",
        rds=ResourceConfig(enabled=False, targets=(InstanceWhitelistTarget("rm-1", "default"),)),
    )

    outcomes = AccountReconciler(account, make_adapters(rds=rds)).reconcile(None, "5.6.7.8")

    assert outcomes == []
    assert rds.calls == []


# =============================================================================
# ReconciliationDriver
# =============================================================================


def test_driver_baseline_unchanged_and_changed() -> None:
    """NoBaseline -> Tracking on first IP, no-op on same IP, reconcile on change."""
    reconciler = RecordingReconciler()
    resolver = SequenceResolver("1.2.3.4", "1.2.3.4", "5.6.7.8")
    driver = ReconciliationDriver(ip_sources=SOURCES, reconcilers=[reconciler], resolver=resolver)
    assert driver.tracking is False

    first = driver.on_trigger()
    assert first.changed is True
    assert driver.tracking is True
    assert reconciler.calls == [(None, "1.2.3.4")]

    second = driver.on_trigger()
    assert second.changed is False
    assert second.ip == "1.2.3.4"
    assert reconciler.calls == [(None, "1.2.3.4")]

    third = driver.on_trigger()
    assert third.changed is True
    assert reconciler.calls == [(None, "1.2.3.4"), ("1.2.3.4", "5.6.7.8")]
    assert driver.state.last_ip == "1.2.3.4"
    assert driver.state.current_ip == "5.6.7.8"


def test_driver_resolution_failure_keeps_state() -> None:
    reconciler = RecordingReconciler()
    resolver = SequenceResolver(
        "1.2.3.4", SourceExhaustedError(["http:x: down"]), "1.2.3.4"
    )
    driver = ReconciliationDriver(ip_sources=SOURCES, reconcilers=[reconciler], resolver=resolver)

    driver.on_trigger()
    failed = driver.on_trigger()
    again = driver.on_trigger()

    assert failed.error
    assert failed.changed is False
    assert again.changed is False
    assert driver.state.current_ip == "1.2.3.4"
    assert reconciler.calls == [(None, "1.2.3.4")]


def test_driver_resolution_failure_before_baseline() -> None:
    reconciler = RecordingReconciler()
    resolver = SequenceResolver(SourceExhaustedError([]), "1.2.3.4")
    driver = ReconciliationDriver(ip_sources=SOURCES, reconcilers=[reconciler], resolver=resolver)

    driver.on_trigger()
    assert driver.tracking is False

    driver.on_trigger()
    assert reconciler.calls == [(None, "1.2.3.4")]


def test_driver_reconciles_every_account_in_order() -> None:
    order: List[str] = []

    class OrderedReconciler(RecordingReconciler):
        def reconcile(self, old_ip, new_ip):
            order.append(self.name)
            return super().reconcile(old_ip, new_ip)

    reconcilers = [OrderedReconciler("a"), OrderedReconciler("b"), OrderedReconciler("c")]
    driver = ReconciliationDriver(
        ip_sources=SOURCES, reconcilers=reconcilers, resolver=SequenceResolver("1.2.3.4")
    )

    result = driver.on_trigger()

    assert order == ["a", "b", "c"]
    assert len(result.outcomes) == 3


def test_driver_account_failure_does_not_stop_other_accounts() -> None:
    broken = RecordingReconciler("broken", fail=True)
    healthy = RecordingReconciler("healthy")
    driver = ReconciliationDriver(
        ip_sources=SOURCES, reconcilers=[broken, healthy], resolver=SequenceResolver("1.2.3.4")
    )

    result = driver.on_trigger()

    assert healthy.calls == [(None, "1.2.3.4")]
    assert [(o.account, o.success) for o in result.outcomes] == [
        ("broken", False),
        ("healthy", True),
    ]
    assert len(result.failures) == 1


def test_driver_skips_overlapping_trigger() -> None:
    """A trigger arriving while a pass is running is skipped, not run concurrently."""
    started = threading.Event()
    release = threading.Event()

    def slow_resolver(sources) -> str:
        started.set()
        release.wait(5)
        return "1.2.3.4"

    reconciler = RecordingReconciler()
    driver = ReconciliationDriver(
        ip_sources=SOURCES, reconcilers=[reconciler], resolver=slow_resolver
    )

    worker = threading.Thread(target=driver.on_trigger)
    worker.start()
    assert started.wait(5)

    overlapping = driver.on_trigger()
    release.set()
    worker.join(5)

    assert overlapping.skipped is True
    assert reconciler.calls == [(None, "1.2.3.4")]


def test_driver_replace_configuration_keeps_state() -> None:
    old = RecordingReconciler("old")
    new = RecordingReconciler("new")
    resolver = SequenceResolver("1.2.3.4", "1.2.3.4", "5.6.7.8")
    driver = ReconciliationDriver(ip_sources=SOURCES, reconcilers=[old], resolver=resolver)

    driver.on_trigger()
    driver.replace_configuration(ip_sources=SOURCES, reconcilers=[new])
    driver.on_trigger()
    driver.on_trigger()

    assert old.calls == [(None, "1.2.3.4")]
    assert new.calls == [("1.2.3.4", "5.6.7.8")]


def test_driver_end_to_end_with_real_account_reconciler() -> None:
    rds = MockMembershipAdapter("RDS", whitelists={"rm-1/default": {"127.0.0.1"}})
    ecs = MockRuleAdapter()
    account = make_account(
        security_groups=[SecurityGroupTarget("sg-1", "22", 1)],
        rds=[InstanceWhitelistTarget("rm-1", "default")],
    )
    driver = ReconciliationDriver(
        ip_sources=SOURCES,
        reconcilers=[AccountReconciler(account, make_adapters(ecs=ecs, rds=rds))],
        resolver=SequenceResolver("1.2.3.4", "5.6.7.8"),
    )

    driver.on_trigger()
    driver.on_trigger()

    assert rds.whitelists["rm-1/default"] == {"127.0.0.1", "5.6.7.8"}
    assert ecs.rules == {("sg-1", "5.6.7.8")}


def test_driver_survives_unexpected_resolver_error() -> None:
    reconciler = RecordingReconciler()
    resolver = SequenceResolver(
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"), "1.2.3.4"
    )
    driver = ReconciliationDriver(ip_sources=SOURCES, reconcilers=[reconciler], resolver=resolver)

    failed = driver.on_trigger()
    assert "invalid start byte" in failed.error
    assert driver.tracking is False
    assert reconciler.calls == []

    recovered = driver.on_trigger()
    assert recovered.changed is True
    assert reconciler.calls == [(None, "1.2.3.4")]


def test_driver_non_utf8_command_source_falls_through_to_next() -> None:
    reconciler = RecordingReconciler()
    sources = (CommandSource(cmd="printf '\\377\\376'"), CommandSource(cmd="echo 203.0.113.5"))
    driver = ReconciliationDriver(ip_sources=sources, reconcilers=[reconciler])

    result = driver.on_trigger()

    assert result.error == ""
    assert reconciler.calls == [(None, "203.0.113.5")]


# =============================================================================
# Config Reload
# =============================================================================


def test_account_added_by_reload_receives_current_ip() -> None:
    rds_a = MockMembershipAdapter("RDS")
    rds_b = MockMembershipAdapter("RDS", whitelists={"rm-b/default": {"127.0.0.1"}})
    first = AccountReconciler(
        make_account("a", rds=[InstanceWhitelistTarget("rm-a", "default")]),
        make_adapters(rds=rds_a),
    )
    second = AccountReconciler(
        make_account("b", rds=[InstanceWhitelistTarget("rm-b", "default")]),
        make_adapters(rds=rds_b),
    )
    driver = ReconciliationDriver(
        ip_sources=SOURCES,
        reconcilers=[first],
        resolver=SequenceResolver("1.2.3.4", "1.2.3.4", "1.2.3.4"),
    )

    driver.on_trigger()
    driver.replace_configuration(ip_sources=SOURCES, reconcilers=[first, second])
    result = driver.on_trigger()

    assert result.changed is False
    assert [(o.account, o.success) for o in result.outcomes] == [("b", True)]
    assert rds_b.whitelists["rm-b/default"] == {"127.0.0.1", "1.2.3.4"}
    assert rds_a.calls == [("fetch", "rm-a/default"), ("replace", "rm-a/default")]

    # Already applied; the next unchanged tick is a no-op
    assert driver.on_trigger().outcomes == []
    assert len(rds_b.calls) == 2


def test_target_added_to_existing_account_by_reload_is_authorized_alone() -> None:
    ecs = MockRuleAdapter()
    adapters = make_adapters(ecs=ecs)
    sg1 = SecurityGroupTarget("sg-1", "22", 1)
    sg2 = SecurityGroupTarget("sg-2", "22", 1)
    driver = ReconciliationDriver(
        ip_sources=SOURCES,
        reconcilers=[AccountReconciler(make_account(security_groups=[sg1]), adapters)],
        resolver=SequenceResolver("1.2.3.4", "1.2.3.4"),
    )

    driver.on_trigger()
    driver.replace_configuration(
        ip_sources=SOURCES,
        reconcilers=[AccountReconciler(make_account(security_groups=[sg1, sg2]), adapters)],
    )
    driver.on_trigger()

    assert ecs.calls == [("authorize", "1.2.3.4", "sg-1"), ("authorize", "1.2.3.4", "sg-2")]


def test_reload_before_baseline_waits_for_first_pass() -> None:
    rds = MockMembershipAdapter("RDS")
    reconciler = AccountReconciler(
        make_account(rds=[InstanceWhitelistTarget("rm-1", "default")]), make_adapters(rds=rds)
    )
    driver = ReconciliationDriver(
        ip_sources=SOURCES,
        reconcilers=[],
        resolver=SequenceResolver(SourceExhaustedError([]), "1.2.3.4"),
    )

    driver.on_trigger()
    driver.replace_configuration(ip_sources=SOURCES, reconcilers=[reconciler])
    result = driver.on_trigger()

    assert result.changed is True
    assert rds.whitelists["rm-1/default"] == {"1.2.3.4"}


def test_added_targets_narrows_to_new_entries() -> None:
    rds1 = InstanceWhitelistTarget("rm-1", "default")
    rds2 = InstanceWhitelistTarget("rm-2", "default")
    acl = LoadBalancerAclTarget("acl-1")
    previous = make_account(rds=[rds1])
    current = make_account(rds=[rds1, rds2], clb=[acl])

    delta = added_targets(previous, current)

    assert delta.rds.targets == (rds2,)
    assert delta.clb.targets == (acl,)
    assert count_targets(delta) == 2
    assert count_targets(added_targets(current, current)) == 0


def test_added_targets_treats_new_or_moved_account_as_new() -> None:
    current = make_account(rds=[InstanceWhitelistTarget("rm-1", "default")])
    moved = Account(
        name="prod",
        access_key_id="key",
        access_key_secret="secret",
        region_id="cn-shanghai",
        rds=current.rds,
    )

    assert added_targets(None, current) == current
    assert added_targets(moved, current) == current
