# ABOUTME: Application graph resolver for the App-of-Apps hierarchy
# ABOUTME: Depth-first expansion from the root with identity-based cycle and duplicate detection

"""
Application Graph Resolver.

The root Application's source may contain ``Application`` documents; each is
a child whose own source may declare further children. Resolution expands
this depth-first and returns every reachable node, parents before children.

- A node met again while still on the in-progress path is a cycle:
  ``CycleError`` aborts the whole resolution.
- A name met again after it finished, with a different source or
  destination, is a ``DuplicateIdentityError``; an identical re-declaration
  is the same node and keeps its first parent.
- Source or composition failures of one node do not abort resolution: the
  node is kept with its error and without children, so sibling applications
  still reconcile.

Every tick resolves from scratch; the caller swaps the result in atomically.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

import structlog

from gitops_reconciler.builder import DesiredState, DesiredStateBuilder
from gitops_reconciler.errors import CycleError, DuplicateIdentityError, GraphError, ReconcilerError
from gitops_reconciler.models import ApplicationSpec, ResourceKey

logger = structlog.get_logger(__name__)

Claims = dict[tuple[str, ResourceKey], frozenset[str]]


@dataclass(frozen=True)
class AppNode:
    """A fully specified application in the resolved graph."""

    spec: ApplicationSpec
    depth: int
    desired: DesiredState | None = None
    error: ReconcilerError | None = None
    children: tuple[str, ...] = field(default=())

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def parent(self) -> str | None:
        return self.spec.parent


@dataclass(frozen=True)
class ResolvedGraph:
    root: str
    nodes: tuple[AppNode, ...]

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: object) -> bool:
        return any(node.name == name for node in self.nodes)

    def get(self, name: str) -> AppNode | None:
        return next((node for node in self.nodes if node.name == name), None)

    def names(self) -> list[str]:
        return [node.name for node in self.nodes]

    def levels(self) -> list[list[AppNode]]:
        """Nodes grouped by depth: the root first, then its children, and so on."""
        grouped: dict[int, list[AppNode]] = defaultdict(list)
        for node in self.nodes:
            grouped[node.depth].append(node)
        return [grouped[depth] for depth in sorted(grouped)]

    def claims(self) -> Claims:
        """Which applications declare each (cluster, resource) pair."""
        owners: dict[tuple[str, ResourceKey], set[str]] = defaultdict(set)
        for node in self.nodes:
            if node.desired is None:
                continue
            for resource in node.desired.resources:
                owners[(node.spec.destination.cluster, resource.key)].add(node.name)
        return {key: frozenset(names) for key, names in owners.items()}


class GraphResolver:
    def __init__(self, builder: DesiredStateBuilder) -> None:
        self._builder = builder

    async def resolve(self, root: ApplicationSpec) -> ResolvedGraph:
        """
        Expand ``root`` into the full application graph.

        Raises:
            CycleError: an application is reachable from itself.
            DuplicateIdentityError: one name, two different declarations.
        """
        ordered: list[AppNode] = []
        finished: dict[str, AppNode] = {}
        in_progress: list[str] = []

        async def visit(declared: ApplicationSpec, parent: str | None, depth: int) -> None:
            spec = declared.resolved(parent)
            name = spec.name

            if name in in_progress:
                raise CycleError([*in_progress[in_progress.index(name):], name])

            if name in finished:
                existing = finished[name]
                if existing.spec.identity_fingerprint() != spec.identity_fingerprint():
                    raise DuplicateIdentityError(
                        f"Application '{name}' is declared by '{existing.parent}' and '{parent}' "
                        "with different source or destination",
                        app=name,
                    )
                return

            in_progress.append(name)
            desired: DesiredState | None = None
            error: ReconcilerError | None = None
            try:
                desired = await self._builder.build(spec)
            except GraphError:
                raise
            except ReconcilerError as e:
                error = e
                logger.warning("Application could not be built", application=name, error=str(e))
            except Exception as e:
                logger.exception("Unexpected failure building application", application=name)
                error = ReconcilerError(f"Unexpected error: {e!r}", app=name)

            children = desired.children if desired else ()
            index = len(ordered)
            ordered.append(AppNode(spec=spec, depth=depth, desired=desired, error=error))
            for child in children:
                await visit(child, name, depth + 1)

            node = AppNode(
                spec=spec,
                depth=depth,
                desired=desired,
                error=error,
                children=tuple(dict.fromkeys(child.name for child in children)),
            )
            ordered[index] = node
            in_progress.pop()
            finished[name] = node

        await visit(root, None, 0)
        graph = ResolvedGraph(root=root.name, nodes=tuple(ordered))
        logger.info("Resolved application graph", root=root.name, applications=len(graph))
        return graph
