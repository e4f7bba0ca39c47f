import pytest

from stackplan.errors import ValidationError
from stackplan.graph import DependencyGraph


class TestDependencyGraph:
    def test_dependencies_first(self):
        g = DependencyGraph.from_edges(
            ["record", "zone", "cdn", "bucket"],
            {"record": ["zone", "cdn"], "cdn": ["bucket"]},
        )
        order = g.topological_order()
        for node, deps in {"record": ["zone", "cdn"], "cdn": ["bucket"]}.items():
            for dep in deps:
                assert order.index(dep) < order.index(node)

    def test_ties_broken_by_declaration_order(self):
        g = DependencyGraph.from_edges(["c", "a", "b"], {})
        assert g.topological_order() == ["c", "a", "b"]

    def test_custom_priority(self):
        g = DependencyGraph.from_edges(["a", "b", "c"], {})
        assert g.topological_order(key=lambda n: -ord(n)) == ["c", "b", "a"]

    def test_find_cycle_returns_closed_path(self):
        g = DependencyGraph.from_edges(["a", "b", "c"], {"a": ["b"], "b": ["c"], "c": ["a"]})
        cycle = g.find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_self_dependency_is_a_cycle(self):
        g = DependencyGraph.from_edges(["a"], {"a": ["a"]})
        assert g.find_cycle() == ["a", "a"]

    def test_acyclic_has_no_cycle(self):
        g = DependencyGraph.from_edges(["a", "b"], {"b": ["a"]})
        assert g.find_cycle() is None

    def test_topological_order_rejects_cycle(self):
        g = DependencyGraph.from_edges(["a", "b"], {"a": ["b"], "b": ["a"]})
        with pytest.raises(ValidationError, match="dependency cycle: "):
            g.topological_order()

    def test_dependents(self):
        g = DependencyGraph.from_edges(["zone", "www", "apex"], {"www": ["zone"], "apex": ["zone"]})
        assert g.dependents("zone") == ["www", "apex"]
        assert g.dependencies("www") == ["zone"]
        assert g.transitive_dependents("www") == set()

    def test_add_edge_adds_nodes(self):
        g = DependencyGraph()
        g.add_edge("b", "a")
        assert "a" in g and "b" in g
        assert len(g) == 2
        assert g.nodes == ["b", "a"]
