"""Run orchestration: stack -> model -> graph -> locked plan/apply.

Configuration errors surface before the lock is taken; everything that
reads or writes observed state runs inside StateStore.locked(), which
releases the lock on every exit path.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from common import retry_call
from config import EngineSettings
from converger.executor import ApplyReport, PlanExecutor, is_retryable
from converger.graph import ResourceGraph
from converger.model import DesiredState, build_from_stack, is_known, lookup_from
from converger.planner import Plan, build_plan
from converger.providers import ProviderRegistry
from converger.state import LockRecord, ResourceState, StateRecord, StateStore

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """What a refresh found when reading every observed instance."""
    unchanged: list[str] = field(default_factory=list)
    drifted: dict[str, list[str]] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'unchanged': list(self.unchanged),
            'drifted': {addr: list(attrs) for addr, attrs in self.drifted.items()},
            'missing': list(self.missing),
        }


class Converger:
    """Drives plan, apply, destroy and refresh for one workspace."""

    def __init__(self, settings: EngineSettings, registry: Optional[ProviderRegistry] = None,
                 store: Optional[StateStore] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.settings = settings
        self.registry = registry or ProviderRegistry.from_settings(settings)
        self.store = store or StateStore.for_path(
            settings.state_path, poll_interval=settings.lock_poll_interval)
        self.cancel_event = cancel_event or threading.Event()

    def _locked(self):
        return self.store.locked(self.settings.operator, self.settings.lock_timeout)

    def validate(self, stack) -> tuple[DesiredState, ResourceGraph]:
        """Build the model and graph; raises ConfigurationError subclasses."""
        desired = build_from_stack(stack, self.registry)
        graph = ResourceGraph(desired)
        logger.debug(f"Stack '{desired.name}' valid: {len(desired)} instances")
        return desired, graph

    def plan(self, stack) -> Plan:
        """Plan against the current observed state (read under the lock)."""
        desired, graph = self.validate(stack)
        with self._locked() as session:
            return build_plan(desired, session.observed, self.registry, graph,
                              observed_version=session.handle.version)

    def apply(self, stack, plan_path: Optional[Path] = None,
              confirm: Optional[Callable[[Plan], bool]] = None) -> tuple[Plan, Optional[ApplyReport]]:
        """Plan and apply under one lock.

        Args:
            stack: StackDefinition to converge to
            plan_path: Optional path to save the executed plan for audit
            confirm: Optional callback shown the plan; returning False aborts

        Returns:
            (plan, report); report is None if nothing was applied
        """
        desired, graph = self.validate(stack)
        return self._converge(desired, graph, plan_path, confirm)

    def destroy(self, name: str = '', plan_path: Optional[Path] = None,
                confirm: Optional[Callable[[Plan], bool]] = None) -> tuple[Plan, Optional[ApplyReport]]:
        """Delete every observed instance (apply against an empty stack)."""
        desired = DesiredState(name=name)
        return self._converge(desired, ResourceGraph(desired), plan_path, confirm)

    def _converge(self, desired: DesiredState, graph: ResourceGraph,
                  plan_path: Optional[Path],
                  confirm: Optional[Callable[[Plan], bool]]) -> tuple[Plan, Optional[ApplyReport]]:
        with self._locked() as session:
            plan = build_plan(desired, session.observed, self.registry, graph,
                              observed_version=session.handle.version)
            if plan_path:
                plan.save(plan_path)
            if plan.is_empty:
                logger.info("No changes. Observed state matches the declarations.")
            if confirm is not None and not plan.is_empty and not confirm(plan):
                logger.info("Apply aborted by operator")
                return plan, None
            executor = PlanExecutor(
                session,
                self.registry,
                concurrency=self.settings.concurrency,
                fail_fast=self.settings.fail_fast,
                operation_timeout=self.settings.operation_timeout,
                retry=self.settings.retry,
                cancel_event=self.cancel_event,
                deadline=self.settings.deadline,
            )
            return plan, executor.apply(plan)

    def refresh(self) -> RefreshResult:
        """Read every observed instance and record what the provider reports.

        Instances the provider no longer has are dropped from observed
        state; changed attribute values are recorded as drift.
        """
        result = RefreshResult()
        retry = self.settings.retry
        with self._locked() as session:
            for address in session.observed:
                prior = session.get(address)
                provider = self.registry.provider(prior.kind)
                live, _ = retry_call(
                    lambda: provider.read(prior.kind, prior.resource_id),
                    max_attempts=retry.max_attempts,
                    delay=retry.delay,
                    backoff=retry.backoff,
                    should_retry=is_retryable,
                    describe=f'read {address}',
                )
                if live is None:
                    logger.warning(f"[refresh] {address} ({prior.resource_id}) no longer exists")
                    session.forget(address)
                    result.missing.append(address)
                    continue
                keys = set(prior.attributes) | set(live.attributes)
                changed = sorted(k for k in keys
                                 if prior.attributes.get(k) != live.attributes.get(k))
                if not changed:
                    result.unchanged.append(address)
                    continue
                logger.info(f"[refresh] {address} drifted: {', '.join(changed)}")
                session.record(ResourceState(
                    address=address,
                    kind=prior.kind,
                    resource_id=live.resource_id,
                    attributes=dict(live.attributes),
                    managed=prior.managed,
                    dependencies=prior.dependencies,
                    declaration_hash=prior.declaration_hash,
                    created_at=prior.created_at,
                    updated_at=prior.updated_at,
                ))
                result.drifted[address] = changed
        return result

    def outputs(self, stack) -> dict[str, Any]:
        """Resolve declared outputs from the last committed observed state."""
        desired, _ = self.validate(stack)
        observed = self.store.read_observed_state()
        values = {address: observed.get(address).attributes for address in observed}
        ids = {address: observed.get(address).resource_id for address in observed}
        lookup = lookup_from(values, ids)
        outputs = {}
        for name, value in desired.outputs.items():
            resolved = value.resolve(lookup)
            outputs[name] = resolved if is_known(resolved) else None
        return outputs

    def show_state(self) -> StateRecord:
        return self.store.read_record()

    def force_unlock(self, lock_id: str) -> LockRecord:
        return self.store.force_unlock(lock_id)
