"""Plan executor.

Issues plan operations in order on a bounded worker pool. An operation is
issued only once everything it depends on has been applied and committed.
Provider calls run on worker threads; results are committed from the
coordinating thread, one at a time, before any dependent is issued.

Failures skip transitive dependents while unrelated operations continue,
unless fail_fast is set. Cancellation (event or deadline) lets in-flight
operations finish and issues nothing new. There is no rollback: whatever
was confirmed stays committed.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional

from common import retry_call
from config import RetrySettings
from converger.errors import (
    ConflictError,
    OperationTimeoutError,
    ProviderError,
    ResourceNotFoundError,
    UnresolvedValueError,
)
from converger.model import UNKNOWN, is_known, lookup_from
from converger.planner import Action, Operation, Plan
from converger.providers import ProviderRegistry, ProviderResult
from converger.state import ResourceState, StateSession

logger = logging.getLogger(__name__)

APPLIED = 'applied'
FAILED = 'failed'
SKIPPED = 'skipped'
CANCELLED = 'cancelled'
UNCHANGED = 'unchanged'
PENDING = 'pending'
RUNNING = 'running'

# Worst first when several operations belong to one instance
_STATUS_RANK = [FAILED, SKIPPED, CANCELLED, PENDING, RUNNING, APPLIED, UNCHANGED]


@dataclass
class OperationOutcome:
    """Result of one plan operation.

    Attributes:
        key: Operation key (action:address)
        address: Instance address
        action: create, update, delete or noop
        status: pending, running, applied, failed, skipped, cancelled, unchanged
        replacing: True for halves of a replacement
        resource_id: Provider id confirmed by the operation
        attempts: Provider calls made
        error: Failure reason or note
        started_at: When the operation was issued
        completed_at: When the outcome was decided
    """
    key: str
    address: str
    action: str
    status: str = PENDING
    replacing: bool = False
    resource_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def complete(self, resource_id: Optional[str] = None, attempts: int = 1) -> None:
        self.status = APPLIED
        self.completed_at = time.time()
        self.attempts = attempts
        if resource_id is not None:
            self.resource_id = resource_id

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.completed_at = time.time()
        self.error = reason

    def cancel(self, reason: str) -> None:
        self.status = CANCELLED
        self.completed_at = time.time()
        self.error = reason

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    @property
    def done(self) -> bool:
        return self.status not in (PENDING, RUNNING)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'address': self.address,
            'action': self.action,
            'status': self.status,
        }
        if self.replacing:
            d['replacing'] = True
        if self.resource_id is not None:
            d['resource_id'] = self.resource_id
        if self.attempts:
            d['attempts'] = self.attempts
        if self.error is not None:
            d['error'] = self.error
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


@dataclass
class ApplyReport:
    """Outcome of one apply.

    Attributes:
        stack: Stack name
        run_id: Identifier of this apply (prefix of idempotency keys)
        outcomes: Per-operation outcomes in plan order
        outputs: Declared outputs resolved from confirmed instances
        cancelled: True if the run was cancelled or hit its deadline
        started_at: Start timestamp
        finished_at: End timestamp
    """
    stack: str
    run_id: str
    outcomes: dict[str, OperationOutcome] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            o.status in (APPLIED, UNCHANGED) for o in self.outcomes.values()
        )

    def by_status(self, status: str) -> list[OperationOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    def instance_status(self, address: str) -> str:
        """Combined status of every operation on address.

        Raises:
            KeyError: If the plan had no operation for address
        """
        statuses = [o.status for o in self.outcomes.values() if o.address == address]
        if not statuses:
            raise KeyError(address)
        return min(statuses, key=_STATUS_RANK.index)

    @property
    def instances(self) -> dict[str, str]:
        addresses = dict.fromkeys(o.address for o in self.outcomes.values())
        return {address: self.instance_status(address) for address in addresses}

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at:
            return self.finished_at - self.started_at
        return None

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for o in self.outcomes.values():
            counts[o.status] = counts.get(o.status, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            'stack': self.stack,
            'run_id': self.run_id,
            'success': self.success,
            'cancelled': self.cancelled,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'duration': round(self.duration, 3) if self.duration is not None else None,
            'counts': self.counts(),
            'instances': self.instances,
            'operations': [o.to_dict() for o in self.outcomes.values()],
            'outputs': dict(self.outputs),
        }


def is_retryable(e: Exception) -> bool:
    return isinstance(e, ProviderError) and e.retryable


class PlanExecutor:
    """Applies a Plan through providers, committing as it goes."""

    def __init__(self, session: StateSession, registry: ProviderRegistry,
                 concurrency: int = 4, fail_fast: bool = False,
                 operation_timeout: float = 600.0,
                 retry: Optional[RetrySettings] = None,
                 cancel_event: Optional[threading.Event] = None,
                 deadline: Optional[float] = None):
        """Initialize executor.

        Args:
            session: Locked state session receiving commits
            registry: Provider registry
            concurrency: Max operations in flight (1 = sequential in plan order)
            fail_fast: Stop issuing after the first failure
            operation_timeout: Seconds before an in-flight call is reported failed
            retry: Retry policy for reads, deletes and idempotent creates/updates
            cancel_event: Set to stop issuing new operations
            deadline: Seconds after start at which the run is cancelled
        """
        self.session = session
        self.registry = registry
        self.concurrency = max(1, concurrency)
        self.fail_fast = fail_fast
        self.operation_timeout = operation_timeout
        self.retry = retry or RetrySettings()
        self.cancel_event = cancel_event or threading.Event()
        self.deadline = deadline

    def apply(self, plan: Plan) -> ApplyReport:
        """Apply plan operations.

        Returns:
            ApplyReport with per-operation outcomes and resolved outputs

        Raises:
            ConflictError: If a commit finds the state record moved; issuing
                stops and in-flight operations finish first
        """
        run_id = uuid.uuid4().hex[:12]
        report = ApplyReport(stack=plan.desired.name, run_id=run_id)
        for op in plan.operations:
            report.outcomes[op.key] = OperationOutcome(
                key=op.key, address=op.address, action=op.action.value, replacing=op.replacing,
                resource_id=op.resource_id,
            )

        started = time.monotonic()
        pending = [op for op in plan.operations]
        in_flight: dict[Future, tuple[Operation, float]] = {}
        timed_out: set[str] = set()
        stopping = False
        conflict: Optional[ConflictError] = None

        logger.info(f"Applying {len(plan.changes)} operations "
                    f"(concurrency={self.concurrency}, run {run_id})")

        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix='converger') as pool:
            while True:
                if not stopping:
                    reason = self._stop_reason(started)
                    if reason:
                        stopping = True
                        report.cancelled = True
                        logger.warning(f"Cancelling apply: {reason}; "
                                       f"waiting for {len(in_flight)} in-flight operations")

                pending = self._settle(pending, report)

                if not stopping:
                    active = len(in_flight)
                    for op in list(pending):
                        if active >= self.concurrency:
                            break
                        if not self._ready(op, report):
                            continue
                        pending.remove(op)
                        report.outcomes[op.key].start()
                        try:
                            values = self._resolve(op)
                        except UnresolvedValueError as e:
                            report.outcomes[op.key].fail(str(e))
                            logger.error(f"[{op.action.value}] {op.address} not issued: {e}")
                            if self.fail_fast:
                                stopping = True
                                break
                            continue
                        logger.info(f"[{op.action.value}] {op.address}")
                        future = pool.submit(self._perform, op, values, run_id)
                        in_flight[future] = (op, time.monotonic())
                        active += 1

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=self._next_wakeup(in_flight, timed_out),
                               return_when=FIRST_COMPLETED)

                for future in done:
                    op, _ = in_flight.pop(future)
                    late = op.key in timed_out
                    timed_out.discard(op.key)
                    try:
                        self._finish(op, future, report, late, conflict is not None)
                    except ConflictError as e:
                        conflict = e
                        stopping = True
                    if report.outcomes[op.key].status == FAILED and self.fail_fast and not stopping:
                        stopping = True
                        logger.warning(f"Fail-fast: stopping after {op.key} failed")

                now = time.monotonic()
                for future, (op, issued) in in_flight.items():
                    if op.key not in timed_out and now - issued >= self.operation_timeout:
                        timed_out.add(op.key)
                        err = OperationTimeoutError(
                            f"{op.key} did not complete within {self.operation_timeout:.0f}s")
                        report.outcomes[op.key].fail(str(err))
                        logger.error(f"[{op.action.value}] {op.address} timed out")
                        if self.fail_fast and not stopping:
                            stopping = True

            for op in pending:
                outcome = report.outcomes[op.key]
                if outcome.done:
                    continue
                blocker = self._blocker(op, report)
                if blocker:
                    outcome.skip(f"dependency {blocker} did not apply")
                elif op.action == Action.NOOP:
                    outcome.status = UNCHANGED
                else:
                    outcome.cancel('run stopped before operation was issued')

        report.outputs = self._outputs(plan, report)
        report.finished_at = time.time()

        if conflict is not None:
            raise conflict

        logger.info(f"Apply finished: {report.counts()}")
        return report

    def _stop_reason(self, started: float) -> Optional[str]:
        if self.cancel_event.is_set():
            return 'cancellation requested'
        if self.deadline is not None and time.monotonic() - started >= self.deadline:
            return f'deadline of {self.deadline:.0f}s exceeded'
        return None

    def _next_wakeup(self, in_flight: dict, timed_out: set[str]) -> float:
        """Seconds until the next timeout check or cancellation poll."""
        now = time.monotonic()
        waits = [0.5]
        for op, issued in in_flight.values():
            if op.key not in timed_out:
                waits.append(max(0.0, issued + self.operation_timeout - now))
        return min(waits)

    def _blocker(self, op: Operation, report: ApplyReport) -> Optional[str]:
        for dep in op.depends_on:
            if report.outcomes[dep].status in (FAILED, SKIPPED, CANCELLED):
                return dep
        return None

    def _ready(self, op: Operation, report: ApplyReport) -> bool:
        return all(report.outcomes[dep].status == APPLIED for dep in op.depends_on)

    def _settle(self, pending: list[Operation], report: ApplyReport) -> list[Operation]:
        """Mark NoOps unchanged and skip operations with a failed dependency."""
        remaining = []
        for op in pending:
            outcome = report.outcomes[op.key]
            if op.action == Action.NOOP:
                outcome.status = UNCHANGED
                continue
            blocker = self._blocker(op, report)
            if blocker:
                outcome.skip(f"dependency {blocker} did not apply")
                logger.warning(f"[skip] {op.address}: {blocker} did not apply")
                continue
            remaining.append(op)
        return remaining

    def _resolve(self, op: Operation) -> dict:
        """Resolve declared attributes against committed producer values.

        Raises:
            UnresolvedValueError: If a referenced attribute was never reported
        """
        if op.instance is None:
            return {}
        observed = self.session.observed
        values = {address: observed.get(address).attributes for address in observed}
        ids = {address: observed.get(address).resource_id for address in observed}
        lookup = lookup_from(values, ids)
        missing = []

        def _checked(target: str, attribute: str) -> Any:
            value = lookup(target, attribute)
            if value is UNKNOWN:
                missing.append(f'{target}.{attribute}')
            return value

        resolved = op.instance.resolve(_checked)
        if missing:
            raise UnresolvedValueError(op.address, sorted(set(missing)))
        return resolved

    def _call(self, func, retryable: bool, describe: str) -> tuple[Any, int]:
        if not retryable:
            return func(), 1
        return retry_call(
            func,
            max_attempts=self.retry.max_attempts,
            delay=self.retry.delay,
            backoff=self.retry.backoff,
            should_retry=is_retryable,
            describe=describe,
        )

    def _perform(self, op: Operation, values: dict, run_id: str) -> tuple[Optional[ProviderResult], int]:
        """Run one operation against its provider (worker thread)."""
        provider = self.registry.provider(op.kind)
        schema = self.registry.schema(op.kind)
        key = f'{run_id}:{op.key}'

        if op.action == Action.CREATE:
            return self._call(
                lambda: provider.create(op.kind, values,
                                        idempotency_key=key if schema.idempotent else None),
                schema.idempotent, f'create {op.address}',
            )
        if op.action == Action.UPDATE:
            return self._call(
                lambda: provider.update(op.kind, op.resource_id, values,
                                        idempotency_key=key if schema.idempotent else None),
                schema.idempotent, f'update {op.address}',
            )
        return None, self._delete(op, provider)

    def _delete(self, op: Operation, provider) -> int:
        """Delete, confirming by read before any retry."""
        attempted = []

        def _delete_once() -> None:
            if attempted and provider.read(op.kind, op.resource_id) is None:
                logger.info(f"[delete] {op.address} confirmed gone after failed attempt")
                return
            attempted.append(True)
            try:
                provider.delete(op.kind, op.resource_id)
            except ResourceNotFoundError:
                logger.info(f"[delete] {op.address} already gone")

        _, attempts = self._call(_delete_once, True, f'delete {op.address}')
        return attempts

    def _finish(self, op: Operation, future: Future, report: ApplyReport,
                late: bool, conflicted: bool) -> None:
        """Commit a completed operation's result (coordinating thread)."""
        outcome = report.outcomes[op.key]
        try:
            result, attempts = future.result()
        except Exception as e:
            if late:
                logger.error(f"[{op.action.value}] {op.address} failed after timing out: {e}")
                return
            outcome.fail(str(e))
            logger.error(f"[{op.action.value}] {op.address} failed: {e}")
            return

        if conflicted:
            outcome.fail('confirmed by provider but not committed: state conflict')
            logger.error(f"[{op.action.value}] {op.address} not committed after state conflict")
            return

        try:
            if op.action == Action.DELETE:
                self.session.forget(op.address)
            else:
                self.session.record(self._resource_state(op, result))
        except ConflictError:
            raise
        except Exception as e:
            outcome.fail(f"confirmed by provider but not committed: {e}")
            logger.error(f"[{op.action.value}] {op.address} not committed: {e}")
            return

        if late:
            outcome.error = (f"{outcome.error}; completed after timeout and was committed")
            logger.warning(f"[{op.action.value}] {op.address} completed after timeout; committed")
            return
        outcome.complete(result.resource_id if result else None, attempts)
        logger.info(f"[{op.action.value}] {op.address} done"
                    + (f" ({result.resource_id})" if result else ''))

    def _resource_state(self, op: Operation, result: ProviderResult) -> ResourceState:
        inst = op.instance
        now = time.time()
        prior = self.session.get(op.address)
        created_at = prior.created_at if prior is not None and op.action == Action.UPDATE else now
        return ResourceState(
            address=op.address,
            kind=op.kind,
            resource_id=result.resource_id,
            attributes=dict(result.attributes),
            managed=list(inst.attributes),
            dependencies=inst.dependencies,
            declaration_hash=inst.declaration_hash,
            created_at=created_at,
            updated_at=now,
        )

    def _outputs(self, plan: Plan, report: ApplyReport) -> dict[str, Any]:
        """Resolve outputs from instances confirmed live in this run."""
        observed = self.session.observed
        live = {}
        ids = {}
        for inst in plan.desired:
            try:
                status = report.instance_status(inst.address)
            except KeyError:
                continue
            state = observed.get(inst.address)
            if status in (APPLIED, UNCHANGED) and state is not None:
                live[inst.address] = state.attributes
                ids[inst.address] = state.resource_id
        lookup = lookup_from(live, ids)
        outputs = {}
        for name, value in plan.desired.outputs.items():
            resolved = value.resolve(lookup)
            outputs[name] = resolved if is_known(resolved) else None
        return outputs