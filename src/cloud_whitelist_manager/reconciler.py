"""IP change reconciliation.

AccountReconciler pushes one (old IP, new IP) change to every enabled target
of one account. ReconciliationDriver owns the last-known IP, decides when a
change happened and fans it out to all accounts.

Failures are isolated: a failing target does not stop its siblings, and a
failing account does not stop the other accounts.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .aliyun import AccountAdapters, MembershipAdapter, RuleAdapter
from .config import Account, IPSource, ResourceConfig
from .errors import SourceExhaustedError, WhitelistManagerError
from .ip_resolver import resolve_public_ip
from .whitelist import sync_membership

logger = logging.getLogger(__name__)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class TargetOutcome:
    """Result of reconciling a single whitelist target."""

    account: str
    kind: str
    target: str
    success: bool
    error: str = ""


@dataclass
class ReconciliationState:
    last_ip: Optional[str] = None
    current_ip: Optional[str] = None


@dataclass
class CycleResult:
    """What happened during one trigger."""

    ip: Optional[str] = None
    changed: bool = False
    skipped: bool = False
    error: str = ""
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[TargetOutcome]:
        return [o for o in self.outcomes if not o.success]


# =============================================================================
# Account Reconciler
# =============================================================================


class AccountReconciler:
    def __init__(self, account: Account, adapters: AccountAdapters):
        self.account = account
        self.adapters = adapters

    @property
    def name(self) -> str:
        return self.account.name

    def reconcile(self, old_ip: Optional[str], new_ip: Optional[str]) -> List[TargetOutcome]:
        """Apply the IP change to every enabled target, in configured order."""
        logger.info(f"Updating resources for account: {self.name}")
        outcomes: List[TargetOutcome] = []

        if self.account.ecs.enabled:
            adapter = self.adapters.ecs
            logger.info(f"Updating {adapter.name} security groups for account: {self.name}")
            for target in self.account.ecs.targets:
                outcomes.append(
                    self._apply(adapter.name, target, self._sync_rule, adapter, target, old_ip, new_ip)
                )

        membership_sections = (
            (self.account.rds, self.adapters.rds),
            (self.account.redis, self.adapters.redis),
            (self.account.clb, self.adapters.clb),
        )
        for section, adapter in membership_sections:
            if not section.enabled:
                continue
            logger.info(f"Updating {adapter.name} whitelists for account: {self.name}")
            for target in section.targets:
                outcomes.append(
                    self._apply(
                        adapter.name, target, self._sync_membership, adapter, target, old_ip, new_ip
                    )
                )

        failed = sum(1 for o in outcomes if not o.success)
        if failed:
            logger.warning(
                f"Account {self.name}: {len(outcomes) - failed} target(s) updated, {failed} failed"
            )
        else:
            logger.info(f"Account {self.name}: {len(outcomes)} target(s) updated")
        return outcomes

    def _apply(self, kind: str, target: Any, func: Callable[..., None], *args: Any) -> TargetOutcome:
        label = target.describe()
        try:
            func(*args)
        except WhitelistManagerError as e:
            logger.error(
                f"Failed to update {kind} whitelist {label} for account {self.name}: {e}. "
                f"Please check that the {kind} resource exists and the AccessKey has proper permissions."
            )
            return TargetOutcome(self.name, kind, label, success=False, error=str(e))
        except Exception as e:
            logger.error(
                f"Unexpected error updating {kind} whitelist {label} for account {self.name}: {e}",
                exc_info=True,
            )
            return TargetOutcome(self.name, kind, label, success=False, error=str(e))

        logger.info(f"{kind} whitelist {label} updated successfully for account: {self.name}")
        return TargetOutcome(self.name, kind, label, success=True)

    @staticmethod
    def _sync_rule(
        adapter: RuleAdapter, target: Any, old_ip: Optional[str], new_ip: Optional[str]
    ) -> None:
        if old_ip:
            adapter.revoke(old_ip, target)
        if new_ip:
            adapter.authorize(new_ip, target)

    @staticmethod
    def _sync_membership(
        adapter: MembershipAdapter, target: Any, old_ip: Optional[str], new_ip: Optional[str]
    ) -> None:
        current = adapter.fetch(target)
        desired = sync_membership(current, old_ip, new_ip)
        logger.debug(
            f"{adapter.name} {target.describe()}: {len(current)} entries -> {len(desired)} entries"
        )
        adapter.replace(target, desired)


def count_targets(account: Account) -> int:
    sections = (account.ecs, account.rds, account.redis, account.clb)
    return sum(len(s.targets) for s in sections if s.enabled)


def added_targets(previous: Optional[Account], account: Account) -> Account:
    """Return ``account`` narrowed to the targets ``previous`` did not have.

    A new account, or one moved to another region, counts as entirely new.
    """
    if previous is None or previous.region_id != account.region_id:
        return account

    def narrow(old: ResourceConfig, new: ResourceConfig) -> ResourceConfig:
        if not new.enabled:
            return new
        known = set(old.targets) if old.enabled else set()
        return ResourceConfig(
            enabled=True, targets=tuple(t for t in new.targets if t not in known)
        )

    return replace(
        account,
        ecs=narrow(previous.ecs, account.ecs),
        rds=narrow(previous.rds, account.rds),
        redis=narrow(previous.redis, account.redis),
        clb=narrow(previous.clb, account.clb),
    )


# =============================================================================
# Driver
# =============================================================================


class ReconciliationDriver:
    """Tracks the public IP and reconciles all accounts when it changes.

    Triggers are serialized: if a pass is still running when the next
    trigger arrives, that trigger is skipped. Targets added by a config
    reload receive the current IP on the next trigger even if the IP has
    not changed.
    """

    def __init__(
        self,
        *,
        ip_sources: Sequence[IPSource],
        reconcilers: Iterable[AccountReconciler],
        resolver: Optional[Callable[[Sequence[IPSource]], str]] = None,
    ):
        self.ip_sources = tuple(ip_sources)
        self.reconcilers = list(reconcilers)
        self.state = ReconciliationState()
        self._resolver = resolver
        self._lock = threading.Lock()
        # Accounts as they were when the current IP was last pushed
        self._applied: Dict[str, Account] = {}

    @property
    def tracking(self) -> bool:
        return self.state.current_ip is not None

    def replace_configuration(
        self, *, ip_sources: Sequence[IPSource], reconcilers: Iterable[AccountReconciler]
    ) -> None:
        """Swap sources and accounts after a config reload; IP state is kept."""
        with self._lock:
            self.ip_sources = tuple(ip_sources)
            self.reconcilers = list(reconcilers)

    def on_trigger(self) -> CycleResult:
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous reconciliation still running, skipping this trigger")
            return CycleResult(skipped=True)
        try:
            return self._run_cycle()
        finally:
            self._lock.release()

    def _run_cycle(self) -> CycleResult:
        try:
            resolver = self._resolver or resolve_public_ip
            ip = resolver(self.ip_sources)
        except SourceExhaustedError as e:
            logger.error(f"Failed to get public IP: {e}")
            return CycleResult(error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error getting public IP: {e}", exc_info=True)
            return CycleResult(error=str(e))

        logger.info(f"Current public IP: {ip}")

        if self.tracking and ip == self.state.current_ip:
            return self._apply_added_targets(ip)

        self.state.last_ip = self.state.current_ip
        self.state.current_ip = ip
        if self.state.last_ip:
            logger.info(f"IP changed from {self.state.last_ip} to {ip}")
        else:
            logger.info(f"Baseline IP recorded: {ip}")

        result = CycleResult(ip=ip, changed=True)
        result.outcomes.extend(
            self._reconcile_all(self.reconcilers, self.state.last_ip, self.state.current_ip)
        )

        failed = len(result.failures)
        logger.info(
            f"IP updated from {self.state.last_ip or '(none)'} to {self.state.current_ip}: "
            f"{len(result.outcomes) - failed} target(s) succeeded, {failed} failed"
        )
        return result

    def _apply_added_targets(self, ip: str) -> CycleResult:
        pending = []
        for reconciler in self.reconcilers:
            delta = added_targets(self._applied.get(reconciler.name), reconciler.account)
            if count_targets(delta):
                pending.append(AccountReconciler(delta, reconciler.adapters))

        if not pending:
            logger.info("IP has not changed, nothing to update")
            return CycleResult(ip=ip)

        logger.info(
            f"IP has not changed, applying {ip} to targets added by config reload "
            f"in account(s): {', '.join(r.name for r in pending)}"
        )
        result = CycleResult(ip=ip)
        result.outcomes.extend(self._reconcile_all(pending, None, ip))
        return result

    def _reconcile_all(
        self,
        reconcilers: Sequence[AccountReconciler],
        old_ip: Optional[str],
        new_ip: Optional[str],
    ) -> List[TargetOutcome]:
        outcomes: List[TargetOutcome] = []
        for reconciler in reconcilers:
            try:
                outcomes.extend(reconciler.reconcile(old_ip, new_ip))
            except Exception as e:
                logger.error(f"Failed to reconcile account {reconciler.name}: {e}", exc_info=True)
                outcomes.append(
                    TargetOutcome(reconciler.name, "account", "", success=False, error=str(e))
                )
        self._applied = {r.name: r.account for r in self.reconcilers}
        return outcomes
