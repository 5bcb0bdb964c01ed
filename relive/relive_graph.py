"""
Records which module imported which, through which linkage statement.
"""

import threading
from typing import Dict, List


class DependencyGraph:
    """Path-keyed edges: dependee -> dependent -> linkage statement keys.

    Records are never referenced from here, only their paths, so the graph
    does not keep a module alive on behalf of the modules that import it.
    """

    def __init__(self):
        self._edges: Dict[str, Dict[str, List[str]]] = {}
        self._lock = threading.RLock()

    def add_edge(self, dependent: str, dependee: str, linkage_key: str) -> bool:
        """Returns True when the edge is new."""
        with self._lock:
            keys = self._edges.setdefault(dependee, {}).setdefault(dependent, [])
            if linkage_key in keys:
                return False
            keys.append(linkage_key)
            return True

    def remove_linkage(self, dependent: str, linkage_key: str):
        with self._lock:
            for dependee in list(self._edges):
                dependents = self._edges[dependee]
                keys = dependents.get(dependent)
                if keys and linkage_key in keys:
                    keys.remove(linkage_key)
                    if not keys:
                        del dependents[dependent]
                if not dependents:
                    del self._edges[dependee]

    def dependents(self, dependee: str) -> List[str]:
        with self._lock:
            return list(self._edges.get(dependee, {}))

    def linkages(self, dependee: str, dependent: str) -> List[str]:
        with self._lock:
            return list(self._edges.get(dependee, {}).get(dependent, []))

    def dependencies(self, dependent: str) -> List[str]:
        with self._lock:
            return [dependee for dependee, dependents in self._edges.items() if dependent in dependents]
