"""Tests for converger.executor module (ordering, failures, commits)."""

import sys
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import RetrySettings
from conftest import decl, make_registry
from converger.errors import ConflictError, ProviderError
from converger.executor import (
    APPLIED,
    CANCELLED,
    FAILED,
    SKIPPED,
    UNCHANGED,
    ApplyReport,
    OperationOutcome,
    PlanExecutor,
    is_retryable,
)
from converger.model import build_model
from converger.planner import build_plan
from converger.providers import InMemoryProvider
from converger.state import StateStore

FAST_RETRY = RetrySettings(max_attempts=3, delay=0.0, backoff=1.0)


def _apply(store, registry, declarations, outputs=None, **kwargs):
    """Plan declarations against the store and apply them under one lock."""
    desired = build_model(declarations, registry, outputs=outputs, name='test')
    kwargs.setdefault('retry', FAST_RETRY)
    with store.locked('tester@localhost', timeout=0.1) as session:
        plan = build_plan(desired, session.observed, registry,
                          observed_version=session.handle.version)
        report = PlanExecutor(session, registry, **kwargs).apply(plan)
    return plan, report


def _chain():
    """a <- b <- c, plus an independent d."""
    return [
        decl('thing', 'a', label='a'),
        decl('thing', 'b', label='b', parent='${thing.a.id}'),
        decl('thing', 'c', label='c', parent='${thing.b.id}'),
        decl('thing', 'd', label='d'),
    ]


def _label(name):
    return lambda attrs: attrs.get('label') == name


class _LostAckProvider(InMemoryProvider):
    """Deletes the object but reports a retryable failure the first time."""

    def __init__(self):
        super().__init__()
        self.dropped = False

    def delete(self, kind, resource_id):
        super().delete(kind, resource_id)
        if not self.dropped:
            self.dropped = True
            raise ProviderError('connection reset', retryable=True)


class _LockStealingProvider(InMemoryProvider):
    """Force-unlocks the state record before creating, as a rogue operator would."""

    def __init__(self, store):
        super().__init__()
        self.store = store

    def create(self, kind, attributes, idempotency_key=None):
        lock = self.store.current_lock()
        if lock is not None:
            self.store.force_unlock(lock.lock_id)
        return super().create(kind, attributes, idempotency_key)


class TestApplyFromEmpty:
    """Creating a stack from empty observed state."""

    def test_web_applied_and_committed(self, store, registry, web_declarations):
        plan, report = _apply(store, registry, web_declarations)
        assert report.success
        assert report.counts() == {APPLIED: 3}
        observed = store.read_observed_state()
        assert sorted(observed.addresses) == ['network.net', 'security_group.group', 'subnet.subnet']
        net = observed.get('network.net')
        assert observed.get('subnet.subnet').attributes['network_id'] == net.resource_id
        assert observed.get('subnet.subnet').dependencies == ['network.net']
        assert observed.get('subnet.subnet').managed == ['network_id', 'cidr_block']

    def test_reapply_is_empty_and_unchanged(self, store, registry, web_declarations):
        _apply(store, registry, web_declarations)
        plan, report = _apply(store, registry, web_declarations)
        assert plan.is_empty
        assert report.success
        assert report.counts() == {UNCHANGED: 3}

    def test_computed_attribute_recorded(self, store, registry):
        _apply(store, registry, [decl('instance', 'vm', image='debian', size=2)])
        vm = store.read_observed_state().get('instance.vm')
        assert vm.attributes['private_ip'] == '10.0.1.1'
        assert vm.managed == ['image', 'size']

    def test_outputs_resolved(self, store, registry, web_declarations):
        _, report = _apply(store, registry, web_declarations, outputs={
            'subnet_id': '${subnet.subnet.id}',
            'cidr': '${network.net.cidr_block}',
        })
        subnet = store.read_observed_state().get('subnet.subnet')
        assert report.outputs == {'subnet_id': subnet.resource_id, 'cidr': '10.0.0.0/16'}

    def test_sequential_follows_plan_order(self, store, provider, registry):
        plan, report = _apply(store, registry, _chain(), concurrency=1)
        observed = store.read_observed_state()
        ids = [observed.get(address).resource_id for address in ['thing.a', 'thing.b',
                                                                  'thing.c', 'thing.d']]
        assert ids == ['thing-0001', 'thing-0002', 'thing-0003', 'thing-0004']

    def test_independent_operations_run_in_parallel(self, store):
        provider = InMemoryProvider(latency=0.2)
        registry = make_registry(provider)
        start = time.monotonic()
        _, report = _apply(store, registry, [decl('thing', f't{i}') for i in range(4)],
                           concurrency=4)
        assert report.success
        assert time.monotonic() - start < 0.6


class TestFailures:
    """Failure isolation and propagation."""

    def test_failure_skips_dependents_only(self, store, provider, registry):
        provider.fail_on('create', 'thing', when=_label('b'))
        _, report = _apply(store, registry, _chain())
        assert report.instance_status('thing.a') == APPLIED
        assert report.instance_status('thing.b') == FAILED
        assert report.instance_status('thing.c') == SKIPPED
        assert report.instance_status('thing.d') == APPLIED
        assert not report.success
        assert 'thing.b' in report.outcomes['create:thing.c'].error
        # Confirmed operations stay committed
        assert sorted(store.read_observed_state().addresses) == ['thing.a', 'thing.d']

    def test_failed_operation_records_error(self, store, provider, registry):
        provider.fail_on('create', 'thing', when=_label('a'),
                         error=ProviderError('quota exceeded'))
        _, report = _apply(store, registry, [decl('thing', 'a', label='a')])
        outcome = report.outcomes['create:thing.a']
        assert outcome.status == FAILED
        assert outcome.error == 'quota exceeded'

    def test_fail_fast_cancels_unissued(self, store, provider, registry):
        provider.fail_on('create', 'thing', when=_label('a'))
        _, report = _apply(store, registry,
                           [decl('thing', 'a', label='a'), decl('thing', 'b', label='b')],
                           concurrency=1, fail_fast=True)
        assert report.instance_status('thing.a') == FAILED
        assert report.instance_status('thing.b') == CANCELLED
        assert ('create', 'thing', None) in provider.calls
        assert len(provider.calls) == 1

    def test_without_fail_fast_independent_work_continues(self, store, provider, registry):
        provider.fail_on('create', 'thing', when=_label('a'))
        _, report = _apply(store, registry,
                           [decl('thing', 'a', label='a'), decl('thing', 'b', label='b')],
                           concurrency=1)
        assert report.instance_status('thing.b') == APPLIED

    def test_operation_timeout(self, store):
        provider = InMemoryProvider(latency=0.3)
        registry = make_registry(provider)
        _, report = _apply(store, registry, [
            decl('thing', 'a'),
            decl('thing', 'b', parent='${thing.a.id}'),
        ], operation_timeout=0.1)
        outcome = report.outcomes['create:thing.a']
        assert outcome.status == FAILED
        assert 'did not complete' in outcome.error
        assert 'committed' in outcome.error
        assert report.instance_status('thing.b') == SKIPPED
        # The late result is still recorded so the object is not orphaned
        assert 'thing.a' in store.read_observed_state()

    def test_unreported_attribute_fails_without_provider_call(self, tmp_path, provider, registry):
        store = StateStore.for_path(tmp_path / 'state.json', poll_interval=0.01)
        _, report = _apply(store, registry, [
            decl('thing', 'a'),
            decl('thing', 'b', parent='${thing.a.nonexistent}'),
            decl('thing', 'c', parent='${thing.b.id}'),
            decl('thing', 'd'),
        ])
        outcome = report.outcomes['create:thing.b']
        assert outcome.status == FAILED
        assert 'thing.a.nonexistent' in outcome.error
        assert report.instance_status('thing.c') == SKIPPED
        assert report.instance_status('thing.d') == APPLIED
        assert len([call for call in provider.calls if call[0] == 'create']) == 2
        assert sorted(store.read_observed_state().addresses) == ['thing.a', 'thing.d']
        assert sorted(p.name for p in tmp_path.iterdir()) == ['state.json']

    def test_commit_failure_fails_operation(self, store, registry):
        desired = build_model([
            decl('thing', 'a'),
            decl('thing', 'b', parent='${thing.a.id}'),
        ], registry, name='test')
        with store.locked('tester@localhost', timeout=0.1) as session:
            plan = build_plan(desired, session.observed, registry,
                              observed_version=session.handle.version)
            with patch.object(store, 'commit', side_effect=OSError('disk full')):
                report = PlanExecutor(session, registry, retry=FAST_RETRY).apply(plan)
        outcome = report.outcomes['create:thing.a']
        assert outcome.status == FAILED
        assert 'not committed' in outcome.error
        assert 'disk full' in outcome.error
        assert report.instance_status('thing.b') == SKIPPED
        assert len(store.read_observed_state()) == 0


class TestRetries:
    """Bounded retries for idempotent calls and deletes."""

    def test_idempotent_create_retried(self, store, provider, registry):
        provider.fail_on('create', 'network',
                         error=ProviderError('throttled', retryable=True), times=2)
        _, report = _apply(store, registry, [decl('network', 'net', cidr_block='10.0.0.0/16')])
        outcome = report.outcomes['create:network.net']
        assert outcome.status == APPLIED
        assert outcome.attempts == 3
        assert len(provider.objects) == 1

    def test_retries_exhausted(self, store, provider, registry):
        provider.fail_on('create', 'network', error=ProviderError('throttled', retryable=True))
        _, report = _apply(store, registry, [decl('network', 'net', cidr_block='10.0.0.0/16')])
        assert report.outcomes['create:network.net'].status == FAILED
        assert provider.calls.count(('create', 'network', None)) == 3

    def test_non_idempotent_create_not_retried(self, store, provider, registry):
        provider.fail_on('create', 'subnet',
                         error=ProviderError('throttled', retryable=True), times=1)
        _, report = _apply(store, registry,
                           [decl('subnet', 's', network_id='n-1', cidr_block='10.0.1.0/24')])
        assert report.outcomes['create:subnet.s'].status == FAILED
        assert provider.calls.count(('create', 'subnet', None)) == 1

    def test_non_retryable_error_not_retried(self, store, provider, registry):
        provider.fail_on('create', 'network', error=ProviderError('bad request'))
        _, report = _apply(store, registry, [decl('network', 'net', cidr_block='10.0.0.0/16')])
        assert report.outcomes['create:network.net'].status == FAILED
        assert provider.calls.count(('create', 'network', None)) == 1

    def test_delete_confirmed_by_read_before_retry(self, store):
        provider = _LostAckProvider()
        registry = make_registry(provider)
        _apply(store, registry, [decl('thing', 'a')])
        resource_id = store.read_observed_state().get('thing.a').resource_id

        _, report = _apply(store, registry, [])
        outcome = report.outcomes['delete:thing.a']
        assert outcome.status == APPLIED
        assert outcome.attempts == 2
        assert provider.calls[-2:] == [('delete', 'thing', resource_id),
                                       ('read', 'thing', resource_id)]
        assert 'thing.a' not in store.read_observed_state()

    def test_delete_of_missing_object_succeeds(self, store, provider, registry):
        _apply(store, registry, [decl('thing', 'a')])
        provider.objects.clear()
        _, report = _apply(store, registry, [])
        assert report.outcomes['delete:thing.a'].status == APPLIED
        assert len(store.read_observed_state()) == 0

    def test_is_retryable(self):
        assert is_retryable(ProviderError('x', retryable=True))
        assert not is_retryable(ProviderError('x'))
        assert not is_retryable(RuntimeError('x'))


class TestDeletesAndReplacements:
    """Deletes and replacements against previously applied state."""

    def test_consumer_deleted_before_producer(self, store, provider, registry):
        _apply(store, registry, [
            decl('thing', 'a'),
            decl('thing', 'b', parent='${thing.a.id}'),
        ])
        observed = store.read_observed_state()
        a_id = observed.get('thing.a').resource_id
        b_id = observed.get('thing.b').resource_id

        _, report = _apply(store, registry, [])
        assert report.success
        deletes = [call for call in provider.calls if call[0] == 'delete']
        assert deletes == [('delete', 'thing', b_id), ('delete', 'thing', a_id)]
        assert len(store.read_observed_state()) == 0

    def test_replacement_deletes_then_creates(self, store, provider, registry, web_declarations):
        _apply(store, registry, web_declarations)
        old_id = store.read_observed_state().get('subnet.subnet').resource_id

        web_declarations[1].attributes['cidr_block'] = '10.0.2.0/24'
        plan, report = _apply(store, registry, web_declarations)
        assert plan.summary()['replace'] == 1
        assert report.instance_status('subnet.subnet') == APPLIED
        subnet = store.read_observed_state().get('subnet.subnet')
        assert subnet.resource_id != old_id
        assert subnet.attributes['cidr_block'] == '10.0.2.0/24'
        assert old_id not in provider.objects

    def test_failed_create_after_delete_leaves_instance_absent(
            self, store, provider, registry, web_declarations):
        _apply(store, registry, web_declarations)
        provider.fail_on('create', 'subnet', when=lambda a: a.get('cidr_block') == '10.0.2.0/24')

        web_declarations[1].attributes['cidr_block'] = '10.0.2.0/24'
        _, report = _apply(store, registry, web_declarations)
        assert report.outcomes['delete:subnet.subnet'].status == APPLIED
        assert report.outcomes['create:subnet.subnet'].status == FAILED
        assert report.instance_status('subnet.subnet') == FAILED
        assert 'subnet.subnet' not in store.read_observed_state()

        # The next plan creates it fresh
        plan = build_plan(build_model(web_declarations, registry),
                          store.read_observed_state(), registry)
        assert [op.key for op in plan.changes] == ['create:subnet.subnet']

    def test_in_place_update_keeps_created_at(self, store, registry, web_declarations):
        _apply(store, registry, web_declarations)
        before = store.read_observed_state().get('security_group.group')

        web_declarations[2].attributes['ingress'] = [{'port': 443}]
        _, report = _apply(store, registry, web_declarations)
        after = store.read_observed_state().get('security_group.group')
        assert report.outcomes['update:security_group.group'].status == APPLIED
        assert after.resource_id == before.resource_id
        assert after.created_at == before.created_at
        assert after.attributes['ingress'] == [{'port': 443}]


class TestCancellation:
    """Cancellation and state conflicts."""

    def test_cancel_before_start_issues_nothing(self, store, provider, registry):
        event = threading.Event()
        event.set()
        _, report = _apply(store, registry, [decl('thing', 'a'), decl('thing', 'b')],
                           cancel_event=event)
        assert report.cancelled
        assert not report.success
        assert report.counts() == {CANCELLED: 2}
        assert provider.calls == []

    def test_cancelled_dependency_skips_consumer(self, store, provider, registry):
        event = threading.Event()
        event.set()
        _, report = _apply(store, registry, [
            decl('thing', 'a'),
            decl('thing', 'b', parent='${thing.a.id}'),
        ], cancel_event=event)
        assert report.instance_status('thing.a') == CANCELLED
        assert report.instance_status('thing.b') == SKIPPED

    def test_conflict_is_raised(self, store):
        provider = _LockStealingProvider(store)
        registry = make_registry(provider)
        with pytest.raises(ConflictError):
            _apply(store, registry, [decl('thing', 'a')])
        assert len(provider.objects) == 1
        assert len(store.read_observed_state()) == 0


class TestReportTypes:
    """Tests for OperationOutcome and ApplyReport."""

    def test_outcome_lifecycle(self):
        outcome = OperationOutcome(key='create:thing.a', address='thing.a', action='create')
        assert not outcome.done
        outcome.start()
        outcome.complete('thing-0001', attempts=2)
        assert outcome.done
        d = outcome.to_dict()
        assert d['status'] == APPLIED
        assert d['resource_id'] == 'thing-0001'
        assert d['attempts'] == 2
        assert 'duration' in d

    def test_instance_status_worst_wins(self):
        report = ApplyReport(stack='s', run_id='r')
        report.outcomes['delete:thing.a'] = OperationOutcome(
            'delete:thing.a', 'thing.a', 'delete', status=APPLIED, replacing=True)
        report.outcomes['create:thing.a'] = OperationOutcome(
            'create:thing.a', 'thing.a', 'create', status=SKIPPED, replacing=True)
        assert report.instance_status('thing.a') == SKIPPED
        assert report.instances == {'thing.a': SKIPPED}
        with pytest.raises(KeyError):
            report.instance_status('thing.none')

    def test_to_dict(self, store, registry, web_declarations):
        _, report = _apply(store, registry, web_declarations)
        data = report.to_dict()
        assert data['stack'] == 'test'
        assert data['success'] is True
        assert data['counts'] == {APPLIED: 3}
        assert [op['key'] for op in data['operations']] == [
            'create:network.net', 'create:subnet.subnet', 'create:security_group.group']
        assert data['duration'] is not None
