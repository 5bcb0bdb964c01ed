"""
Live modules.

A `ModuleRecord` owns one file's persistent scope and runs its update cycles;
the `ModuleLinker` is the `__relive__` object desugared code calls into; the
`ModuleManager` is the registry tying records, the dependency graph and the
watcher together.
"""

import asyncio
import builtins
import importlib
import logging
import os
import threading
import types
import weakref
from typing import Any, Callable, Dict, List, Optional, Tuple

from relive.relive_config import ReliveConfig
from relive.relive_datatypes import (
    Diff, EvaluationError, Fragment, PropagationError, ReliveError,
    TopLevelNode, TopLevelSuspendDetectedError, UpdateResult,
)
from relive.relive_differ import SnapshotDiffer
from relive.relive_evaluator import ScopedEvaluator
from relive.relive_graph import DependencyGraph
from relive.relive_lifecycle import LifecycleTracker
from relive.relive_parser import Parser
from relive.relive_printer import Printer
from relive.relive_remapper import SourceRemapper
from relive.relive_resolver import ModuleResolver, Resolution, module_name_for
from relive.relive_transformer import MEMBER_TEMP, ReliveTransformer
from relive.relive_watch import PollingWatcher

LOGGER = logging.getLogger(__name__)

SCRATCH_PATH = '<repl>'
INPUT_PATH = '<input>'
_MISSING = object()


# =================================================================
# Instance fields
# =================================================================

class InstanceField:
    """A per-instance field stored outside the instances, keyed by identity.

    Redeclaring the field only replaces its default; values already assigned
    on existing instances are kept.
    """

    def __init__(self, owner: type, name: str, default: Any = _MISSING):
        self.owner = owner
        self.name = name
        self.default = default
        self._values: Dict[int, Any] = {}

    def __get__(self, instance, owner=None):
        if instance is None:
            return self if self.default is _MISSING else self.default
        try:
            return self._values[id(instance)]
        except KeyError:
            pass
        if self.default is _MISSING:
            raise AttributeError(f"{type(instance).__name__!r} object has no attribute {self.name!r}")
        return self.default

    def __set__(self, instance, value):
        key = id(instance)
        if key not in self._values:
            try:
                weakref.finalize(instance, self._values.pop, key, None)
            except TypeError:
                # Not weak-referenceable: the value lives as long as the field.
                LOGGER.debug("instance of %s is not weak-referenceable", type(instance).__name__)
        self._values[key] = value

    def __delete__(self, instance):
        try:
            del self._values[id(instance)]
        except KeyError:
            raise AttributeError(self.name) from None

    def __repr__(self):
        return f"<InstanceField {self.owner.__qualname__}.{self.name}>"


def _rename_member(value: Any, owner: type, name: str):
    if isinstance(value, (staticmethod, classmethod)):
        targets = [value.__func__]
    elif isinstance(value, property):
        targets = [f for f in (value.fget, value.fset, value.fdel) if f is not None]
    else:
        targets = [value]
    qualname = f"{owner.__qualname__}.{name}"
    for target in targets:
        if isinstance(target, types.FunctionType) and target.__name__ == MEMBER_TEMP:
            target.__name__ = name
            target.__qualname__ = qualname
            # Tracebacks read the code object's names.
            changes = {'co_name': name}
            if hasattr(target.__code__, 'co_qualname'):
                changes['co_qualname'] = qualname
            target.__code__ = target.__code__.replace(**changes)
        elif isinstance(target, type) and target.__qualname__.startswith(MEMBER_TEMP + '.'):
            # Nested classes are built inside a factory function.
            target.__qualname__ = qualname


def _public_names(source: Any) -> List[str]:
    listed = getattr(source, '__all__', None)
    if isinstance(listed, (list, tuple)):
        return list(listed)
    return [n for n in vars(source) if not n.startswith('_')]


# =================================================================
# Linker
# =================================================================

class ModuleLinker:
    """The `__relive__` capability injected into every live module."""

    def __init__(self, manager: 'ModuleManager', record: 'ModuleRecord'):
        self._manager = manager
        self._record = record

    def _resolve(self, specifier: str) -> Resolution:
        return self._manager.resolver.resolve(specifier, self._record.directory)

    def _project(self, resolution: Resolution, specifier: str) -> 'ModuleRecord':
        dependee = self._manager.ensure_loaded_sync(resolution.path)
        record = self._record
        node = record.current_node
        if node is not None and specifier in node.import_targets:
            if self._manager.graph.add_edge(record.path, dependee.path, record.current_key):
                LOGGER.debug("linked %s -> %s", record.path, dependee.path)
        return dependee

    def _load(self, specifier: str) -> Tuple[Any, Optional['ModuleRecord']]:
        resolution = self._resolve(specifier)
        if resolution.is_project:
            record = self._project(resolution, specifier)
            return record.exports, record
        return importlib.import_module(specifier), None

    def import_module(self, specifier: str, top_level: bool = False) -> Any:
        module, record = self._load(specifier)
        if not top_level:
            return module
        parts = specifier.split('.')
        if record is None:
            return importlib.import_module(parts[0])
        # `import a.b` binds `a`, with `b` reachable as an attribute.
        top, _ = self._load(parts[0])
        parent = top
        for index in range(1, len(parts)):
            child, _ = self._load(".".join(parts[:index + 1]))
            if not hasattr(parent, parts[index]):
                setattr(parent, parts[index], child)
            parent = child
        return top

    def _submodule(self, specifier: str, name: str) -> Any:
        qualified = specifier + name if specifier.endswith('.') else f"{specifier}.{name}"
        module, _ = self._load(qualified)
        return module

    def import_from(self, specifier: str, *names: str) -> Any:
        module, record = self._load(specifier)
        values = []
        for name in names:
            if hasattr(module, name):
                values.append(getattr(module, name))
            elif record is not None and name in record.namespace:
                values.append(record.namespace[name])
            else:
                try:
                    values.append(self._submodule(specifier, name))
                except ImportError as e:
                    raise ImportError(f"cannot import name {name!r} from {specifier!r}") from e
        return values[0] if len(values) == 1 else tuple(values)

    def import_star(self, specifier: str):
        module, _ = self._load(specifier)
        bindings = {name: getattr(module, name) for name in _public_names(module) if hasattr(module, name)}
        record = self._record
        stale = [n for n in record.star_bindings.get(specifier, ()) if n not in bindings]
        for name in stale:
            record.namespace.pop(name, None)
        record.tracker.retract(stale)
        record.namespace.update(bindings)
        record.star_bindings[specifier] = tuple(bindings)
        record.tracker.publish(bindings)

    def forget_star(self, specifier: str):
        record = self._record
        names = record.star_bindings.pop(specifier, ())
        for name in names:
            record.namespace.pop(name, None)
        record.tracker.retract(names)

    def declare(self, *names: str):
        for name in names:
            self._record.namespace.setdefault(name, None)

    def install_member(self, owner: type, name: str, value: Any):
        _rename_member(value, owner, name)
        setattr(owner, name, value)
        set_name = getattr(type(value), '__set_name__', None)
        if set_name is not None:
            set_name(value, owner, name)

    def remove_member(self, owner: Optional[type], name: str):
        if owner is None:
            return
        if name in vars(owner):
            delattr(owner, name)
        fields = self._record.instance_fields.get(owner)
        if fields:
            fields.pop(name, None)

    def instance_field(self, owner: type, name: str, default: Any = _MISSING):
        fields = self._record.instance_fields.setdefault(owner, {})
        field = fields.get(name)
        if field is not None and vars(owner).get(name) is field:
            field.default = default
            return
        field = InstanceField(owner, name, default)
        fields[name] = field
        setattr(owner, name, field)


# =================================================================
# Records
# =================================================================

class _Cycle:
    """Bookkeeping for one update cycle: what ran, and what to commit."""

    def __init__(self, record: 'ModuleRecord', diff: Diff):
        self.record = record
        self.diff = diff
        self.ran: set = set()
        self.removed: set = set()
        self.count = 0
        self.value = None

    def node_for(self, fragment: Fragment) -> Optional[TopLevelNode]:
        if fragment.kind != 'run':
            return None
        return self.diff.latest.get(fragment.key)

    def done(self, fragment: Fragment, value: Any):
        self.count += 1
        match fragment.kind:
            case 'run':
                self.ran.add(fragment.key)
                self.record.tracker.after_run(fragment)
                self.value = value
            case 'remove':
                self.removed.add(fragment.key)
                self.record.tracker.after_retract(fragment)

    def _commit(self, complete: bool):
        previous = self.record.previous_fragments
        latest = self.diff.latest
        if complete:
            snapshot = dict(latest)
        else:
            emitted = {f.key for f in self.diff.fragments if f.kind == 'run'}
            pending_removals = {f.key for f in self.diff.fragments if f.kind == 'remove'} - self.removed
            snapshot = {}
            for key, node in latest.items():
                if key not in emitted or key in self.ran:
                    snapshot[key] = node
                elif key in previous:
                    snapshot[key] = previous[key]
            for key in pending_removals:
                snapshot.setdefault(key, previous[key])
        graph = self.record.manager.graph
        for key, node in previous.items():
            if node.import_targets and key not in snapshot:
                graph.remove_linkage(self.record.path, key)
        self.record.previous_fragments = snapshot

    def fail(self, fragment: Fragment, error: Exception) -> UpdateResult:
        self._commit(complete=False)
        return self.record.failure(EvaluationError(fragment, error), fragments_run=self.count)

    def finish(self) -> UpdateResult:
        self._commit(complete=True)
        return UpdateResult(status='success', path=self.record.path, value=self.value,
                            fragments_run=self.count)


class ModuleRecord:
    """Per-file live state: scope, exports, last committed snapshot."""

    def __init__(self, manager: 'ModuleManager', path: str, name: str, source: Optional[str] = None):
        self.manager = manager
        self.path = path
        self.name = name
        self.virtual_source = source
        if os.path.isabs(path):
            self.directory = os.path.dirname(path)
        else:
            self.directory = manager.resolver.project_root
        self.exports = types.ModuleType(name)
        self.exports.__file__ = path
        self.linker = ModuleLinker(manager, self)
        self.namespace: Dict[str, Any] = {
            '__name__': name,
            '__file__': path,
            '__builtins__': builtins,
            '__relive__': self.linker,
        }
        self.tracker = LifecycleTracker(self.namespace, self.exports)
        self.evaluator = ScopedEvaluator(self.namespace)
        self.previous_fragments: Dict[str, TopLevelNode] = {}
        self.compile_flags = 0
        self.is_async_mode = False
        self.lock = asyncio.Lock()
        self.loaded = False
        self.loading = False
        self.rerun_requested = False
        self.current_node: Optional[TopLevelNode] = None
        self.current_key: Optional[str] = None
        self.star_bindings: Dict[str, Tuple[str, ...]] = {}
        self.instance_fields: 'weakref.WeakKeyDictionary[type, Dict[str, InstanceField]]' = weakref.WeakKeyDictionary()

    def __repr__(self):
        return f"<ModuleRecord {self.name} {self.path}>"

    @property
    def live_names(self):
        return self.tracker.live_names

    def read_source(self) -> str:
        if self.virtual_source is not None:
            return self.virtual_source
        with open(self.path, 'r', encoding='utf-8') as f:
            return f.read()

    def prepare(self) -> Diff:
        """Parse, desugar and diff the current source against the snapshot."""
        source = self.read_source()
        tree = self.manager.parser.parse(source, self.path)
        program = self.manager.transformer.transform(tree, source)
        self.compile_flags = self.evaluator.compile_flags = program.compile_flags
        diff = self.manager.differ.diff(self.previous_fragments, program, self.path)
        self.manager.remapper.update_offsets(diff.offsets, diff.line_tables)
        return diff

    def failure(self, error: BaseException, fragments_run: int = 0, action: str = 'update') -> UpdateResult:
        if isinstance(error, EvaluationError):
            message = str(error)
            detail = self.manager.remapper.format_exception(error.original)
        else:
            message = f"{type(error).__name__}: {error}"
            detail = message
        LOGGER.warning("%s of %s failed: %s", action, self.path, message)
        return UpdateResult(
            status='error',
            path=self.path,
            fragments_run=fragments_run,
            error=error,
            error_message=message,
            side_effects=[{'topics': ['stderr'], 'message': detail}],
        )

    def _begin(self) -> Tuple[Optional[Diff], Optional[UpdateResult]]:
        try:
            return self.prepare(), None
        except (ReliveError, OSError) as e:
            return None, self.failure(e)

    def _execute(self, fragment: Fragment, node: Optional[TopLevelNode] = None) -> Any:
        self.current_node = node
        self.current_key = fragment.key if node is not None else None
        try:
            return self.evaluator.submit(fragment.source_text, fragment.tracker_id)
        finally:
            self.current_node = self.current_key = None

    async def _execute_async(self, fragment: Fragment, node: Optional[TopLevelNode] = None) -> Any:
        self.current_node = node
        self.current_key = fragment.key if node is not None else None
        try:
            return await self.evaluator.submit_async(fragment.source_text, fragment.tracker_id)
        finally:
            self.current_node = self.current_key = None

    async def _execute_either(self, fragment: Fragment, node: Optional[TopLevelNode] = None) -> Any:
        if node is not None:
            await self.manager.preload(self, node)
        try:
            return self._execute(fragment, node)
        except TopLevelSuspendDetectedError:
            return await self._execute_async(fragment, node)

    def update_sync(self) -> UpdateResult:
        """One update cycle without suspension support.

        Raises TopLevelSuspendDetectedError before running anything when some
        fragment of the cycle suspends at top level.
        """
        diff, failure = self._begin()
        if failure is not None:
            return failure
        if self.is_async_mode or any(f.is_async for f in diff.fragments):
            raise TopLevelSuspendDetectedError(f"{self.path} suspends at top level")
        cycle = _Cycle(self, diff)
        for fragment in diff.fragments:
            try:
                value = self._execute(fragment, cycle.node_for(fragment))
            except Exception as e:
                return cycle.fail(fragment, e)
            cycle.done(fragment, value)
        return cycle.finish()

    async def update(self) -> UpdateResult:
        """One update cycle; suspending fragments are awaited in place."""
        diff, failure = self._begin()
        if failure is not None:
            return failure
        cycle = _Cycle(self, diff)
        for fragment in diff.fragments:
            try:
                if fragment.is_async:
                    self.is_async_mode = True
                value = await self._execute_either(fragment, cycle.node_for(fragment))
            except Exception as e:
                return cycle.fail(fragment, e)
            cycle.done(fragment, value)
        return cycle.finish()

    def relink(self, key: str) -> bool:
        """Re-runs one stored linkage statement; True if any binding changed.

        The whole scope is compared, not just the exports: `import_from` also
        serves private names and names left out of `__all__`.
        """
        node = self.previous_fragments.get(key)
        if node is None:
            return False
        fragment = self.manager.differ.fragment(node, self.path, key)
        before = dict(self.namespace)
        self._execute(fragment, node)
        self.tracker.after_run(fragment)
        after = self.namespace
        if before.keys() != after.keys():
            return True
        return any(after[name] is not value for name, value in before.items())

    def _input_fragments(self, source: str) -> List[Tuple[Fragment, TopLevelNode]]:
        tree = self.manager.parser.parse(source, INPUT_PATH)
        program = self.manager.transformer.transform(tree, source)
        self.evaluator.compile_flags = self.compile_flags | program.compile_flags
        fragments = [(self.manager.differ.fragment(node, INPUT_PATH), node) for node in program.nodes]
        self.manager.remapper.update_offsets(
            {f.content_hash: node.line for f, node in fragments},
            {f.content_hash: node.line_table for f, node in fragments if node.line_table})
        return fragments

    def evaluate_sync(self, source: str) -> UpdateResult:
        """Runs interactive input in this module's scope."""
        try:
            fragments = self._input_fragments(source)
        except ReliveError as e:
            return self.failure(e, action='evaluation')
        if any(f.is_async for f, _ in fragments):
            raise TopLevelSuspendDetectedError("input suspends at top level")
        value = None
        for count, (fragment, _) in enumerate(fragments):
            try:
                value = self._execute(fragment)
            except Exception as e:
                return self.failure(EvaluationError(fragment, e), fragments_run=count, action='evaluation')
            self.tracker.after_run(fragment)
        return UpdateResult(status='success', path=self.path, value=value, fragments_run=len(fragments))

    async def evaluate(self, source: str) -> UpdateResult:
        try:
            fragments = self._input_fragments(source)
        except ReliveError as e:
            return self.failure(e, action='evaluation')
        value = None
        for count, (fragment, node) in enumerate(fragments):
            try:
                await self.manager.preload(self, node)
                try:
                    value = self._execute(fragment)
                except TopLevelSuspendDetectedError:
                    value = await self._execute_async(fragment)
            except Exception as e:
                return self.failure(EvaluationError(fragment, e), fragments_run=count, action='evaluation')
            self.tracker.after_run(fragment)
        return UpdateResult(status='success', path=self.path, value=value, fragments_run=len(fragments))


# =================================================================
# Manager
# =================================================================

class ModuleManager:
    """Registry of live modules; runs update cycles and propagates them."""

    def __init__(self, config: Optional[ReliveConfig] = None, project_root: Optional[str] = None):
        self.config = config or ReliveConfig()
        root = project_root or self.config.project_root or os.getcwd()
        self.resolver = ModuleResolver(root)
        self.parser = Parser()
        self.printer = Printer()
        self.transformer = ReliveTransformer(self.printer)
        self.differ = SnapshotDiffer(self.printer)
        self.remapper = SourceRemapper()
        self.graph = DependencyGraph()
        self.watcher: Optional[PollingWatcher] = None
        self.entry_path: Optional[str] = None
        self._records: Dict[str, ModuleRecord] = {}
        self._registry_lock = threading.RLock()
        self._creation_listeners: List[Callable[[ModuleRecord], Any]] = []
        self._update_listeners: List[Callable[[ModuleRecord, UpdateResult], Any]] = []

    # --- Registry ---

    def _normalize(self, path: str) -> str:
        return path if path.startswith('<') else os.path.abspath(path)

    def get(self, path: str) -> Optional[ModuleRecord]:
        with self._registry_lock:
            return self._records.get(self._normalize(path))

    def get_or_create(self, path: str, *, source: Optional[str] = None,
                      is_entry: bool = False) -> ModuleRecord:
        path = self._normalize(path)
        with self._registry_lock:
            record = self._records.get(path)
            if record is not None:
                return record
            if is_entry:
                name = '__main__'
                self.entry_path = self.entry_path or path
            elif path.startswith('<'):
                name = path.strip('<>')
            else:
                name = module_name_for(path, self.resolver.project_root)
            record = ModuleRecord(self, path, name, source=source)
            self._records[path] = record
        LOGGER.debug("created module record path=%s name=%s", path, name)
        for listener in list(self._creation_listeners):
            listener(record)
        return record

    def create_scratch(self) -> ModuleRecord:
        record = self.get_or_create(SCRATCH_PATH, source='', is_entry=True)
        record.loaded = True
        return record

    def get_module_paths(self) -> List[str]:
        with self._registry_lock:
            return list(self._records)

    def get_vars(self, path: str) -> Dict[str, Any]:
        record = self._require(path)
        return {k: v for k, v in record.namespace.items()
                if not (k.startswith('__') and k.endswith('__'))}

    def _require(self, path: str) -> ModuleRecord:
        record = self.get(path)
        if record is None:
            raise KeyError(f"no live module for {path}")
        return record

    # --- Listeners ---

    def on_module_created(self, listener: Callable[[ModuleRecord], Any]):
        self._creation_listeners.append(listener)

    def on_module_updated(self, listener: Callable[[ModuleRecord, UpdateResult], Any]):
        self._update_listeners.append(listener)

    def _notify_updated(self, record: ModuleRecord, result: UpdateResult):
        for listener in list(self._update_listeners):
            listener(record, result)

    # --- Loading ---

    def _loaded(self, record: ModuleRecord, result: UpdateResult):
        if result.status == 'success':
            record.loaded = True
        self.watch_module(record.path)
        self._notify_updated(record, result)

    def load_sync(self, path: str, *, source: Optional[str] = None, is_entry: bool = False) -> UpdateResult:
        record = self.get_or_create(path, source=source, is_entry=is_entry)
        record.loading = True
        try:
            result = record.update_sync()
        finally:
            record.loading = False
        self._loaded(record, result)
        return result

    def ensure_loaded_sync(self, path: str) -> ModuleRecord:
        """Used by the linker while another module runs."""
        record = self.get_or_create(path)
        if record.loaded or record.loading:
            return record
        try:
            result = self.load_sync(path)
        except TopLevelSuspendDetectedError as e:
            raise ImportError(f"{path} suspends at top level and must be loaded asynchronously") from e
        if result.status == 'error':
            raise ImportError(f"cannot load {path}: {result.error_message}") from result.error
        return record

    async def preload(self, record: ModuleRecord, node: TopLevelNode):
        """Loads the project modules a statement links to, with suspension support."""
        for specifier in node.import_targets:
            try:
                resolution = self.resolver.resolve(specifier, record.directory)
            except ImportError:
                continue  # the statement itself reports it
            if not resolution.is_project:
                continue
            dependee = self.get_or_create(resolution.path)
            if not dependee.loaded and not dependee.loading:
                await self.load(resolution.path)

    async def _run_cycle(self, record: ModuleRecord) -> UpdateResult:
        mode = self.config.mode
        if mode == 'async' or record.is_async_mode:
            record.is_async_mode = True
            return await record.update()
        try:
            return record.update_sync()
        except TopLevelSuspendDetectedError as e:
            if mode == 'sync':
                return record.failure(e)
            LOGGER.info("%s suspends at top level; switching to async mode", record.path)
            record.is_async_mode = True
            return await record.update()

    async def load(self, path: str, *, source: Optional[str] = None, is_entry: bool = False) -> UpdateResult:
        record = self.get_or_create(path, source=source, is_entry=is_entry)
        async with record.lock:
            record.loading = True
            try:
                result = await self._run_cycle(record)
            finally:
                record.loading = False
        self._loaded(record, result)
        return result

    # --- Updates ---

    async def update(self, path: str) -> UpdateResult:
        """Runs an update cycle for a changed file, then propagates it."""
        record = self.get(path)
        if record is None:
            return await self.load(path)
        if record.lock.locked():
            if record.rerun_requested:
                LOGGER.debug("update of %s already queued", record.path)
                return UpdateResult(status='success', path=record.path)
            record.rerun_requested = True
        async with record.lock:
            record.rerun_requested = False
            result = await self._run_cycle(record)
        if result.status == 'success':
            record.loaded = True
        if result.fragments_run:
            result.side_effects.extend(await self.propagate(record.path))
        self._notify_updated(record, result)
        return result

    async def propagate(self, path: str) -> List[Dict]:
        """Relinks every dependent of `path`; returns the failures as side effects."""
        dependents = self.graph.dependents(path)
        if not dependents:
            return []
        results = await asyncio.gather(*(self._relink(dependent, path) for dependent in dependents))
        return [effect for effects in results for effect in effects]

    async def _relink(self, dependent: str, target: str) -> List[Dict]:
        record = self.get(dependent)
        if record is None:
            return []
        effects: List[Dict] = []
        changed = False
        async with record.lock:
            for key in self.graph.linkages(target, dependent):
                try:
                    changed = record.relink(key) or changed
                except Exception as e:
                    error = PropagationError(dependent, target, e)
                    LOGGER.warning("%s", error)
                    effects.append({'topics': ['stderr'], 'message': str(error)})
        if changed:
            LOGGER.debug("propagating %s -> %s", target, dependent)
            effects.extend(await self.propagate(dependent))
        return effects

    # --- Interactive evaluation ---

    def eval_in_module(self, path: str, source: str) -> UpdateResult:
        return self._require(path).evaluate_sync(source)

    async def aeval_in_module(self, path: str, source: str) -> UpdateResult:
        record = self._require(path)
        async with record.lock:
            return await record.evaluate(source)

    # --- Watching ---

    def watch_module(self, path: str):
        if not self.config.watch or path.startswith('<') or not os.path.isfile(path):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop to poll from; synchronous use
        if self.watcher is None:
            self.watcher = PollingWatcher(self.config.poll_interval)
        if not self.watcher.is_watching(path):
            self.watcher.watch(path, self.update)

    async def close(self):
        if self.watcher is not None:
            await self.watcher.close()
        with self._registry_lock:
            records = list(self._records.values())
        for record in records:
            record.evaluator.close()
