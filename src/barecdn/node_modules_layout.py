"""Nested ``node_modules`` layout for a resolved dependency graph."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .models import DependencyGraph

logger = logging.getLogger(__name__)


@dataclass
class PackageDirectory:
    """One installed copy of a package."""
    version: str
    node_modules: Dict[str, "PackageDirectory"] = field(default_factory=dict)


NodeModulesDirectory = Dict[str, PackageDirectory]

# (directories from the root down to the package's own node_modules,
#  packages enclosing this placement, package name, placed directory)
_Placement = Tuple[List[NodeModulesDirectory], FrozenSet[Tuple[str, str]], str, PackageDirectory]


class NodeModulesLayoutMaker:
    """Places packages so that upward resolution finds the right version.

    A dependency is hoisted to the top-level directory unless some directory
    between the requirer and the root already holds a different version of
    it, in which case it is nested in the requirer's own ``node_modules``.
    """

    def layout(
        self,
        root_dependencies: Mapping[str, str],
        graph: DependencyGraph,
    ) -> NodeModulesDirectory:
        """Compute the directory tree.

        Args:
            root_dependencies: Package name to exact version for direct imports.
            graph: Package, version to that version's resolved dependencies.

        Returns:
            The top-level ``node_modules`` directory.
        """
        root: NodeModulesDirectory = {}
        queue: Deque[_Placement] = deque()
        for pkg, version in root_dependencies.items():
            directory = PackageDirectory(version)
            root[pkg] = directory
            queue.append(([root, directory.node_modules], frozenset({(pkg, version)}), pkg, directory))

        while queue:
            chain, ancestry, pkg, directory = queue.popleft()
            for dep, dep_version in graph.get(pkg, {}).get(directory.version, {}).items():
                if dep == pkg:
                    continue
                if (dep, dep_version) in ancestry:
                    logger.debug("Dependency cycle at %s@%s -> %s@%s", pkg, directory.version, dep, dep_version)
                    continue
                existing = self._find_nearest(chain, dep)
                if existing is not None and existing.version == dep_version:
                    continue
                placed = PackageDirectory(dep_version)
                if existing is None:
                    root[dep] = placed
                    queue.append(([root, placed.node_modules], frozenset({(dep, dep_version)}), dep, placed))
                else:
                    directory.node_modules[dep] = placed
                    queue.append(
                        (chain + [placed.node_modules], ancestry | {(dep, dep_version)}, dep, placed)
                    )
        return root

    @staticmethod
    def _find_nearest(chain: List[NodeModulesDirectory], pkg: str) -> Optional[PackageDirectory]:
        for node_modules in reversed(chain):
            found = node_modules.get(pkg)
            if found is not None:
                return found
        return None
