"""Orchestration layer — Dependency resolver.

Turns the declared dependency relationships of the requested modules into a
deterministic, cycle-free :class:`ExecutionPlan`.

Algorithm:
  1. Expand the requested set with transitive dependencies.  A dependency
     may name a module or a capability tag; capabilities are resolved
     through the registry.
  2. Build a NetworkX DiGraph where ``A -> B`` means "A runs before B".
  3. Three-colour depth-first search.  A back-edge to a GRAY node is a cycle
     and raises :class:`CircularDependencyError` with the full path.
  4. Emit the reverse post-order.  Roots and successors are visited in the
     reverse of the tie-break key ``(declaration index, name)`` so modules
     with no ordering constraint come out in declaration order, then by name.
  5. Check conflicts between planned modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator

import networkx as nx

from serverforge.exceptions import (
    CapabilityNotFoundError,
    CircularDependencyError,
    ConflictError,
    UnknownDependencyError,
)
from serverforge.logging import get_logger
from serverforge.modules.registry import ModuleRegistry

log = get_logger(__name__)


class _Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


@dataclass
class ExecutionWave:
    """A batch of modules with no dependency relationship between them."""

    wave_index: int
    modules: list[str]
    is_final: bool = False


@dataclass
class ExecutionPlan:
    """Ordered module names plus the graph they were derived from."""

    modules: tuple[str, ...]
    graph: nx.DiGraph = field(repr=False)
    requested: tuple[str, ...] = ()

    def __iter__(self) -> Iterator[str]:
        return iter(self.modules)

    def __len__(self) -> int:
        return len(self.modules)

    def __contains__(self, name: object) -> bool:
        return name in self.modules

    def position(self, name: str) -> int:
        return self.modules.index(name)

    def predecessors(self, name: str) -> list[str]:
        """Return modules *name* directly depends on."""
        return sorted(self.graph.predecessors(name), key=self.position)

    def ancestors(self, name: str) -> set[str]:
        return nx.ancestors(self.graph, name)

    def is_independent(self, a: str, b: str) -> bool:
        """Return True if *a* and *b* have no dependency relationship."""
        return a not in self.ancestors(b) and b not in self.ancestors(a)

    def waves(self) -> Iterator[ExecutionWave]:
        """Yield Kahn layers; members keep their plan order."""
        graph = self.graph.copy()
        wave_index = 0
        while graph.nodes:
            ready = sorted(
                (n for n in graph.nodes if graph.in_degree(n) == 0), key=self.position
            )
            remaining_after = len(graph.nodes) - len(ready)
            yield ExecutionWave(
                wave_index=wave_index,
                modules=ready,
                is_final=(remaining_after == 0),
            )
            graph.remove_nodes_from(ready)
            wave_index += 1

    def to_dict(self) -> dict[str, object]:
        return {
            "modules": list(self.modules),
            "requested": list(self.requested),
            "edges": sorted([a, b] for a, b in self.graph.edges),
        }


class DependencyResolver:
    """Builds execution plans from the registry.

    Usage::

        resolver = DependencyResolver(registry)
        plan = resolver.resolve(["security/firewall"])
        for name in plan:
            ...
    """

    def __init__(self, registry: ModuleRegistry) -> None:
        self._registry = registry

    def resolve(self, requested: Iterable[str] | None = None) -> ExecutionPlan:
        """Return the execution plan for *requested* (all modules if None).

        Raises:
            ModuleNotFoundError: a requested module is not registered.
            UnknownDependencyError: a dependency names nothing registered.
            AmbiguousCapabilityError: a capability dependency has several providers.
            CircularDependencyError: the dependency graph has a cycle.
            ConflictError: two planned modules conflict.
        """
        if requested is None:
            roots = self._registry.list_modules()
        else:
            roots = list(dict.fromkeys(requested))
            for name in roots:
                self._registry.descriptor(name)

        graph = self.build_graph(roots)
        order = self._order(graph)
        self._check_conflicts(order)

        plan = ExecutionPlan(modules=tuple(order), graph=graph, requested=tuple(roots))
        log.debug("plan_resolved", modules=list(plan.modules))
        return plan

    def build_graph(self, roots: Iterable[str]) -> nx.DiGraph:
        """Return the dependency graph of *roots* and everything they need."""
        graph: nx.DiGraph = nx.DiGraph()
        pending = list(roots)
        seen: set[str] = set()
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            graph.add_node(name)
            for ref in sorted(self._registry.descriptor(name).dependencies):
                dep = self._resolve_dependency(name, ref)
                graph.add_edge(dep, name)
                if dep not in seen:
                    pending.append(dep)
        return graph

    def _resolve_dependency(self, module: str, reference: str) -> str:
        try:
            return self._registry.resolve_reference(reference)
        except CapabilityNotFoundError:
            raise UnknownDependencyError(module, reference) from None

    def _key(self, name: str) -> tuple[int, str]:
        return (self._registry.declaration_index(name), name)

    def _order(self, graph: nx.DiGraph) -> list[str]:
        color = {n: _Color.WHITE for n in graph.nodes}
        post_order: list[str] = []
        path: list[str] = []

        def visit(node: str) -> None:
            color[node] = _Color.GRAY
            path.append(node)
            for succ in sorted(graph.successors(node), key=self._key, reverse=True):
                if color[succ] is _Color.GRAY:
                    start = path.index(succ)
                    raise CircularDependencyError(path[start:] + [succ])
                if color[succ] is _Color.WHITE:
                    visit(succ)
            path.pop()
            color[node] = _Color.BLACK
            post_order.append(node)

        for node in sorted(graph.nodes, key=self._key, reverse=True):
            if color[node] is _Color.WHITE:
                visit(node)

        post_order.reverse()
        return post_order

    def _check_conflicts(self, order: list[str]) -> None:
        planned = set(order)
        provided: dict[str, set[str]] = {}
        for name in order:
            for tag in self._registry.descriptor(name).provides:
                provided.setdefault(tag, set()).add(name)

        for name in order:
            for ref in sorted(self._registry.descriptor(name).conflicts):
                if ref in planned and ref != name:
                    raise ConflictError(name, ref)
                for provider in sorted(provided.get(ref, set()) - {name}):
                    raise ConflictError(name, provider)
