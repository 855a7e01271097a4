"""Tests for converger.graph module."""

import random
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import decl
from converger.errors import CyclicDependencyError
from converger.graph import ReferenceEdge, ResourceGraph, topological_order
from converger.model import build_model


def _graph(*declarations):
    return ResourceGraph(build_model(list(declarations)))


class TestTopologicalOrder:
    """Tests for the generic topological_order helper."""

    def test_dependencies_first(self):
        order = topological_order(['c', 'b', 'a'], {'c': ['b'], 'b': ['a']})
        assert order == ['a', 'b', 'c']

    def test_ties_keep_node_order(self):
        assert topological_order(['x', 'y', 'z'], {}) == ['x', 'y', 'z']

    def test_ignores_unknown_dependencies(self):
        assert topological_order(['a'], {'a': ['gone']}) == ['a']

    def test_cycle_path(self):
        with pytest.raises(CyclicDependencyError) as exc:
            topological_order(['a', 'b', 'c'], {'a': ['b'], 'b': ['c'], 'c': ['a']})
        assert exc.value.cycle == ['a', 'b', 'c', 'a']

    def test_self_cycle(self):
        with pytest.raises(CyclicDependencyError):
            topological_order(['a'], {'a': ['a']})

    def test_chain_deeper_than_recursion_limit(self):
        depth = sys.getrecursionlimit() + 200
        nodes = [f'n{i}' for i in reversed(range(depth))]
        deps = {f'n{i}': [f'n{i - 1}'] for i in range(1, depth)}
        assert topological_order(nodes, deps) == [f'n{i}' for i in range(depth)]

    def test_cycle_at_end_of_deep_chain(self):
        depth = sys.getrecursionlimit() + 200
        nodes = [f'n{i}' for i in range(depth)]
        deps = {f'n{i}': [f'n{i + 1}'] for i in range(depth - 1)}
        deps[f'n{depth - 1}'] = [f'n{depth - 2}']
        with pytest.raises(CyclicDependencyError) as exc:
            topological_order(nodes, deps)
        assert exc.value.cycle == [f'n{depth - 2}', f'n{depth - 1}', f'n{depth - 2}']


class TestResourceGraph:
    """Tests for ResourceGraph."""

    def test_deep_chain_declared_in_reverse(self):
        depth = sys.getrecursionlimit() + 200
        declarations = [decl('thing', 't0')] + [
            decl('thing', f't{i}', parent='${thing.t%d.id}' % (i - 1)) for i in range(1, depth)
        ]
        graph = ResourceGraph(build_model(list(reversed(declarations))))
        order = graph.order()
        assert len(order) == depth
        assert order[0] == 'thing.t0'
        assert order[-1] == f'thing.t{depth - 1}'

    def test_web_order(self, web_declarations):
        graph = ResourceGraph(build_model(web_declarations))
        assert graph.order() == ['network.net', 'subnet.subnet', 'security_group.group']
        assert graph.consumers('network.net') == ['subnet.subnet', 'security_group.group']
        assert graph.producers('subnet.subnet') == ['network.net']

    def test_edges(self, web_declarations):
        graph = ResourceGraph(build_model(web_declarations))
        assert ReferenceEdge('subnet.subnet', 'network.net', 'network_id') in graph.edges
        assert len(graph.edges) == 2

    def test_declaration_order_breaks_ties(self):
        graph = _graph(
            decl('thing', 'b', parent='${thing.root.id}'),
            decl('thing', 'a', parent='${thing.root.id}'),
            decl('thing', 'root'),
        )
        assert graph.order() == ['thing.root', 'thing.b', 'thing.a']

    def test_diamond_visited_once(self):
        graph = _graph(
            decl('thing', 'top'),
            decl('thing', 'left', p='${thing.top.id}'),
            decl('thing', 'right', p='${thing.top.id}'),
            decl('thing', 'bottom', l='${thing.left.id}', r='${thing.right.id}'),
        )
        order = graph.order()
        assert order == ['thing.top', 'thing.left', 'thing.right', 'thing.bottom']
        assert graph.dependents('thing.top') == ['thing.left', 'thing.right', 'thing.bottom']

    def test_multiple_references_one_edge_per_attribute(self):
        graph = _graph(
            decl('thing', 'a'),
            decl('thing', 'b', x='${thing.a.id}', y='${thing.a.name}'),
        )
        assert len(graph.edges) == 2
        assert graph.producers('thing.b') == ['thing.a']

    def test_order_consistent_with_every_edge(self):
        rng = random.Random(7)
        for _ in range(20):
            count = rng.randint(2, 12)
            declarations = []
            for i in range(count):
                attrs = {f'p{j}': f'${{thing.n{j}.id}}' for j in range(i) if rng.random() < 0.3}
                declarations.append(decl('thing', f'n{i}', **attrs))
            rng.shuffle(declarations)
            graph = ResourceGraph(build_model(declarations))
            index = {addr: i for i, addr in enumerate(graph.order())}
            for edge in graph.edges:
                assert index[edge.producer] < index[edge.consumer]

    def test_two_cycle_detected(self):
        with pytest.raises(CyclicDependencyError) as exc:
            _graph(
                decl('thing', 'a', p='${thing.b.id}'),
                decl('thing', 'b', p='${thing.a.id}'),
            )
        assert exc.value.cycle[0] == exc.value.cycle[-1]
        assert set(exc.value.cycle) == {'thing.a', 'thing.b'}

    def test_long_cycle_reports_full_path(self):
        with pytest.raises(CyclicDependencyError) as exc:
            _graph(
                decl('thing', 'ok'),
                decl('thing', 'a', p='${thing.c.id}'),
                decl('thing', 'b', p='${thing.a.id}'),
                decl('thing', 'c', p='${thing.b.id}', q='${thing.ok.id}'),
            )
        assert exc.value.cycle == ['thing.a', 'thing.c', 'thing.b', 'thing.a']
        assert 'thing.a -> thing.c -> thing.b -> thing.a' in str(exc.value)

    def test_create_and_destroy_order(self, web_declarations):
        graph = ResourceGraph(build_model(web_declarations))
        create = [i.address for i in graph.create_order()]
        destroy = [i.address for i in graph.destroy_order()]
        assert create == ['network.net', 'subnet.subnet', 'security_group.group']
        assert destroy == list(reversed(create))

    def test_index_unknown(self, web_declarations):
        graph = ResourceGraph(build_model(web_declarations))
        assert graph.index('network.net') == 0
        with pytest.raises(KeyError):
            graph.index('thing.none')

    def test_empty(self):
        graph = ResourceGraph(build_model([]))
        assert graph.order() == []
        assert graph.edges == []
