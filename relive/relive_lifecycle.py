"""
Tracks the live top-level names of a module and mirrors them into its export
surface after each fragment runs or is retracted.
"""

import types
from typing import Any, Dict, Iterable, Set

from relive.relive_datatypes import Fragment


class LifecycleTracker:
    """Bookkeeping between a module's scope and its export surface.

    A name is exported when the scope defines `__all__` and lists it, or, when
    there is no `__all__`, when it does not start with an underscore.
    """

    def __init__(self, namespace: Dict[str, Any], exports: types.ModuleType):
        self.namespace = namespace
        self.exports = exports
        self.live_names: Set[str] = set()

    def is_exported(self, name: str) -> bool:
        listed = self.namespace.get('__all__')
        if isinstance(listed, (list, tuple, set, frozenset)):
            return name in listed
        return not name.startswith('_')

    def after_run(self, fragment: Fragment):
        self.publish(fragment.defined_names)

    def after_retract(self, fragment: Fragment):
        self.retract(fragment.retracted_names)

    def publish(self, names: Iterable[str]):
        names = list(names)
        for name in names:
            if name in self.namespace:
                self.live_names.add(name)
        if '__all__' in names:
            self.resync()
            return
        for name in names:
            self._mirror(name)

    def retract(self, names: Iterable[str]):
        for name in names:
            self.live_names.discard(name)
            if name in self.exports.__dict__:
                delattr(self.exports, name)
        if '__all__' in names:
            self.resync()

    def resync(self):
        """Rebuilds the whole export surface, e.g. after `__all__` changed."""
        for name in list(self.exports.__dict__):
            if not name.startswith('__') and not self._should_export(name):
                delattr(self.exports, name)
        for name in self.live_names:
            self._mirror(name)
        listed = self.namespace.get('__all__')
        if isinstance(listed, (list, tuple, set, frozenset)):
            self.exports.__all__ = list(listed)
        elif '__all__' in self.exports.__dict__:
            del self.exports.__all__

    def _should_export(self, name: str) -> bool:
        return name in self.live_names and name in self.namespace and self.is_exported(name)

    def _mirror(self, name: str):
        if self._should_export(name):
            setattr(self.exports, name, self.namespace[name])
        elif name in self.exports.__dict__ and not name.startswith('__'):
            delattr(self.exports, name)
