"""Tests for converger.runner (Converger orchestration)."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from converger.errors import (
    CyclicDependencyError,
    LockContentionError,
    UnknownKindError,
)
from converger.executor import APPLIED
from converger.runner import Converger
from converger.state import StateStore
from declarations import StackDefinition, load_stack_file


def _stack(*resources, outputs=None, name='web'):
    return StackDefinition.from_dict({
        'name': name,
        'resources': list(resources),
        'outputs': outputs or {},
    })


@pytest.fixture
def converger(settings, registry):
    return Converger(settings, registry=registry)


class TestConvergerApply:
    """apply / plan / destroy round trips against the file-backed store."""

    def test_apply_then_plan_is_empty(self, converger, stack_file):
        stack = load_stack_file(stack_file)
        plan, report = converger.apply(stack)
        assert plan.summary()['create'] == 3
        assert report.success
        assert converger.plan(stack).is_empty

    def test_state_file_written(self, converger, settings, stack_file):
        converger.apply(load_stack_file(stack_file))
        data = json.loads(settings.state_path.read_text())
        assert data['lock'] is None
        assert set(data['resources']) == {'network.net', 'subnet.subnet', 'security_group.group'}

    def test_outputs_in_report(self, converger, stack_file):
        _, report = converger.apply(load_stack_file(stack_file))
        assert report.outputs['network_cidr'] == '10.0.0.0/16'
        assert report.outputs['subnet_id'].startswith('subnet-')

    def test_plan_saved_for_audit(self, converger, stack_file, tmp_path):
        path = tmp_path / 'plans' / 'apply.json'
        converger.apply(load_stack_file(stack_file), plan_path=path)
        data = json.loads(path.read_text())
        assert data['stack'] == 'web'
        assert len(data['operations']) == 3

    def test_confirm_declined(self, converger, settings, stack_file):
        seen = []

        def confirm(plan):
            seen.append(plan)
            return False

        plan, report = converger.apply(load_stack_file(stack_file), confirm=confirm)
        assert report is None
        assert seen == [plan]
        assert converger.show_state().observed.addresses == []
        assert converger.show_state().lock is None

    def test_confirm_not_asked_for_empty_plan(self, converger, stack_file):
        stack = load_stack_file(stack_file)
        converger.apply(stack)
        asked = []
        _, report = converger.apply(stack, confirm=lambda plan: asked.append(plan) or False)
        assert asked == []
        assert report.success

    def test_destroy(self, converger, provider, stack_file):
        converger.apply(load_stack_file(stack_file))
        plan, report = converger.destroy('web')
        assert plan.summary()['delete'] == 3
        assert report.success
        assert len(converger.show_state().observed) == 0
        assert provider.objects == {}

    def test_destroy_empty_state(self, converger):
        plan, report = converger.destroy()
        assert plan.is_empty
        assert report.success

    def test_validation_errors_before_lock(self, converger, settings):
        with pytest.raises(UnknownKindError):
            converger.apply(_stack({'kind': 'widget', 'name': 'a'}))
        with pytest.raises(CyclicDependencyError):
            converger.plan(_stack(
                {'kind': 'thing', 'name': 'a', 'attributes': {'p': '${thing.b.id}'}},
                {'kind': 'thing', 'name': 'b', 'attributes': {'p': '${thing.a.id}'}},
            ))
        assert not settings.state_path.exists()

    def test_validate_returns_graph(self, converger, stack_file):
        desired, graph = converger.validate(load_stack_file(stack_file))
        assert len(desired) == 3
        assert len(graph.edges) == 2


class TestConvergerLocking:
    """Lock contention between two runs on one workspace."""

    def test_held_lock_blocks_apply(self, converger, settings, stack_file):
        other = StateStore.for_path(settings.state_path)
        other.acquire_lock('someone-else@host', timeout=0.1)
        with pytest.raises(LockContentionError) as exc:
            converger.apply(load_stack_file(stack_file))
        assert exc.value.holder == 'someone-else@host'

    def test_force_unlock(self, converger, settings):
        other = StateStore.for_path(settings.state_path)
        handle = other.acquire_lock('crashed@host', timeout=0.1)
        removed = converger.force_unlock(handle.lock_id)
        assert removed.holder == 'crashed@host'
        assert converger.show_state().lock is None


class TestConvergerRefresh:
    """refresh() reconciles observed state with the provider."""

    def test_refresh_unchanged(self, converger, stack_file):
        converger.apply(load_stack_file(stack_file))
        result = converger.refresh()
        assert sorted(result.unchanged) == ['network.net', 'security_group.group', 'subnet.subnet']
        assert result.drifted == {}
        assert result.missing == []

    def test_refresh_drops_missing(self, converger, provider, stack_file):
        stack = load_stack_file(stack_file)
        converger.apply(stack)
        group_id = converger.show_state().observed.get('security_group.group').resource_id
        del provider.objects[group_id]

        result = converger.refresh()
        assert result.missing == ['security_group.group']
        assert 'security_group.group' not in converger.show_state().observed
        assert [op.key for op in converger.plan(stack).changes] == ['create:security_group.group']

    def test_refresh_records_drift(self, converger, provider, stack_file):
        stack = load_stack_file(stack_file)
        converger.apply(stack)
        group_id = converger.show_state().observed.get('security_group.group').resource_id
        provider.objects[group_id][1]['ingress'] = [{'port': 23}]

        result = converger.refresh()
        assert result.drifted == {'security_group.group': ['ingress']}
        plan = converger.plan(stack)
        assert [op.key for op in plan.changes] == ['update:security_group.group']

        _, report = converger.apply(stack)
        assert report.instance_status('security_group.group') == APPLIED
        assert provider.objects[group_id][1]['ingress'] == []


class TestConvergerOutputs:

    def test_outputs_from_committed_state(self, converger, stack_file):
        stack = load_stack_file(stack_file)
        converger.apply(stack)
        outputs = converger.outputs(stack)
        subnet = converger.show_state().observed.get('subnet.subnet')
        assert outputs == {'subnet_id': subnet.resource_id, 'network_cidr': '10.0.0.0/16'}

    def test_outputs_before_apply_are_none(self, converger, stack_file):
        outputs = converger.outputs(load_stack_file(stack_file))
        assert outputs == {'subnet_id': None, 'network_cidr': None}
