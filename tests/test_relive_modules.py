import asyncio
import logging
import os
import textwrap

import pytest

from relive.relive_config import ReliveConfig
from relive.relive_datatypes import ParseError, TopLevelSuspendDetectedError
from relive.relive_modules import ModuleManager, ModuleRecord

# --- Helpers ---

def write(path, text):
    """Writes a source file and moves its mtime forward."""
    path.write_text(textwrap.dedent(text).lstrip("\n"))
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
    return str(path)


@pytest.fixture
def manager(tmp_path):
    return ModuleManager(ReliveConfig(watch=False), project_root=str(tmp_path))


def value_of(manager, path, expr):
    result = manager.eval_in_module(path, expr)
    assert result.status == 'success', result.format_error()
    return result.value


# --- Loading and updating ---

def test_load_runs_the_file_once(manager, tmp_path):
    path = write(tmp_path / "m.py", """
        log = []
        log.append("loaded")
        x = 40 + 2
    """)
    result = manager.load_sync(path)
    assert result.status == 'success'
    assert manager.get_vars(path)["x"] == 42
    assert manager.get_vars(path)["log"] == ["loaded"]


@pytest.mark.asyncio
async def test_update_runs_only_changed_statements(manager, tmp_path):
    path = write(tmp_path / "m.py", """
        log = []
        log.append("loaded")
        x = 1
    """)
    manager.load_sync(path)
    write(tmp_path / "m.py", """
        log = []
        log.append("loaded")
        x = 2
    """)
    result = await manager.update(path)
    assert result.status == 'success'
    assert manager.get_vars(path)["x"] == 2
    assert manager.get_vars(path)["log"] == ["loaded"]


@pytest.mark.asyncio
async def test_deleted_statement_removes_its_name(manager, tmp_path):
    path = write(tmp_path / "m.py", "a = 1\nb = 2\n")
    manager.load_sync(path)
    write(tmp_path / "m.py", "a = 1\n")
    await manager.update(path)
    assert "b" not in manager.get_vars(path)
    assert manager.get_vars(path)["a"] == 1


@pytest.mark.asyncio
async def test_exports_follow_the_scope(manager, tmp_path):
    path = write(tmp_path / "m.py", "x = 1\n_hidden = 2\n")
    manager.load_sync(path)
    exports = manager.get(path).exports
    assert exports.x == 1
    assert not hasattr(exports, "_hidden")

    write(tmp_path / "m.py", "x = 1\n_hidden = 2\n__all__ = ['_hidden']\n")
    await manager.update(path)
    assert exports._hidden == 2
    assert not hasattr(exports, "x")
    assert exports.__all__ == ["_hidden"]

    write(tmp_path / "m.py", "_hidden = 2\n")
    await manager.update(path)
    assert not hasattr(exports, "x")
    assert not hasattr(exports, "__all__")


# --- Classes ---

GREETER = """
    class Greeter:
        greeting: str = "hello"

        def greet(self, name):
            return f"{self.greeting}, {name}"

    g = Greeter()
    g.greeting = "hi"
"""


@pytest.mark.asyncio
async def test_class_update_keeps_existing_instances(manager, tmp_path):
    path = write(tmp_path / "greeter.py", GREETER)
    manager.load_sync(path)
    before = value_of(manager, path, "g")
    assert value_of(manager, path, "g.greet('bob')") == "hi, bob"

    write(tmp_path / "greeter.py", GREETER.replace('f"{self.greeting}, {name}"',
                                                   'f"{self.greeting}!! {name}"'))
    await manager.update(path)
    assert value_of(manager, path, "g") is before
    assert value_of(manager, path, "g.greet('bob')") == "hi!! bob"


@pytest.mark.asyncio
async def test_field_default_is_redeclared_without_touching_values(manager, tmp_path):
    path = write(tmp_path / "greeter.py", GREETER)
    manager.load_sync(path)
    write(tmp_path / "greeter.py", GREETER.replace('"hello"', '"hey"'))
    await manager.update(path)
    assert value_of(manager, path, "Greeter().greeting") == "hey"
    assert value_of(manager, path, "g.greeting") == "hi"


def test_installed_methods_are_named_after_their_member(manager, tmp_path):
    path = write(tmp_path / "greeter.py", GREETER)
    manager.load_sync(path)
    assert value_of(manager, path, "Greeter.greet.__name__") == "greet"
    assert value_of(manager, path, "Greeter.greet.__qualname__") == "Greeter.greet"


INHERITANCE = """
    class Base:
        label = "base"

        def m(self):
            return 1

        @classmethod
        def make(cls):
            return "made"

    class Child(Base):
        def m(self):
            return super().m() + 1

        def peek(self):
            return super().label

        @classmethod
        def make(cls):
            return "child " + super().make()

    v = Child().m()
"""


def test_super_calls_reach_the_base_class(manager, tmp_path):
    path = write(tmp_path / "shapes.py", INHERITANCE)
    result = manager.load_sync(path)
    assert result.status == 'success', result.format_error()
    assert manager.get_vars(path)["v"] == 2
    assert value_of(manager, path, "Child.make()") == "child made"


def test_super_attribute_read_in_method_is_none(manager, tmp_path):
    path = write(tmp_path / "shapes.py", INHERITANCE)
    manager.load_sync(path)
    assert value_of(manager, path, "Child().peek()") is None


def test_nested_class_mangles_under_its_own_name(manager, tmp_path):
    path = write(tmp_path / "outer.py", """
        class Outer:
            class Inner:
                __secret = 5

                def reveal(self):
                    return self.__secret

            size = 1

        value = Outer.Inner().reveal()
    """)
    result = manager.load_sync(path)
    assert result.status == 'success', result.format_error()
    assert manager.get_vars(path)["value"] == 5
    assert value_of(manager, path, "hasattr(Outer.Inner, '_Inner__secret')") is True
    assert value_of(manager, path, "Outer.Inner.__qualname__") == "Outer.Inner"


# --- Live bindings ---

@pytest.mark.asyncio
async def test_lambda_references_stay_current(manager, tmp_path):
    path = write(tmp_path / "m.py", "handler = lambda x: x + 1\ncallbacks = [handler]\n")
    manager.load_sync(path)
    write(tmp_path / "m.py", "handler = lambda x: x + 2\ncallbacks = [handler]\n")
    await manager.update(path)
    assert value_of(manager, path, "callbacks[0](1)") == 3


@pytest.mark.asyncio
async def test_dict_entries_update_in_place(manager, tmp_path):
    path = write(tmp_path / "m.py", "routes = {'a': 1, 'b': 2}\nalias = routes\n")
    manager.load_sync(path)
    write(tmp_path / "m.py", "routes = {'a': 10}\nalias = routes\n")
    await manager.update(path)
    assert value_of(manager, path, "alias") == {"a": 10}
    assert value_of(manager, path, "alias is routes") is True


# --- Propagation ---

@pytest.mark.asyncio
async def test_dependents_are_relinked(manager, tmp_path):
    lib = write(tmp_path / "lib.py", "def greet():\n    return 'v1'\n")
    app = write(tmp_path / "app.py", """
        from lib import greet
        calls = []
        calls.append(greet())
    """)
    manager.load_sync(app)
    assert manager.graph.dependents(lib) == [app]

    write(tmp_path / "lib.py", "def greet():\n    return 'v2'\n")
    result = await manager.update(lib)
    assert result.status == 'success'
    assert value_of(manager, app, "greet()") == "v2"
    assert value_of(manager, app, "calls") == ["v1"]


@pytest.mark.asyncio
async def test_propagation_follows_the_chain(manager, tmp_path, monkeypatch):
    c = write(tmp_path / "c.py", "def x():\n    return 1\n")
    write(tmp_path / "b.py", "from c import x\n")
    a = write(tmp_path / "a.py", "from b import x\n")
    manager.load_sync(a)

    order = []
    relink = ModuleRecord.relink

    def spy(self, key):
        order.append(os.path.basename(self.path))
        return relink(self, key)
    monkeypatch.setattr(ModuleRecord, "relink", spy)

    write(tmp_path / "c.py", "def x():\n    return 2\n")
    await manager.update(c)
    assert order == ["b.py", "a.py"]
    assert value_of(manager, a, "x()") == 2


@pytest.mark.asyncio
async def test_private_names_propagate_through_the_chain(manager, tmp_path):
    c = write(tmp_path / "c.py", "_x = 1\n")
    b = write(tmp_path / "b.py", "from c import _x\n")
    a = write(tmp_path / "a.py", "from b import _x\n")
    manager.load_sync(a)
    assert value_of(manager, a, "_x") == 1

    write(tmp_path / "c.py", "_x = 2\n")
    await manager.update(c)
    assert value_of(manager, b, "_x") == 2
    assert value_of(manager, a, "_x") == 2


@pytest.mark.asyncio
async def test_import_cycles_terminate(manager, tmp_path):
    a = write(tmp_path / "a.py", "import b\nvalue = 1\n")
    write(tmp_path / "b.py", "import a\nvalue = 2\n")
    assert manager.load_sync(a).status == 'success'

    write(tmp_path / "a.py", "import b\nvalue = 3\n")
    result = await asyncio.wait_for(manager.update(a), timeout=5)
    assert result.status == 'success'
    assert value_of(manager, a, "b.a.value") == 3


@pytest.mark.asyncio
async def test_failed_relink_is_reported_not_raised(manager, tmp_path):
    lib = write(tmp_path / "relive_lib_q.py", "def greet():\n    return 'v1'\n")
    app = write(tmp_path / "relive_app_q.py", "from relive_lib_q import greet\n")
    manager.load_sync(app)

    write(tmp_path / "relive_lib_q.py", "def hello():\n    return 'v2'\n")
    result = await manager.update(lib)
    assert result.status == 'success'
    assert any("failed to relink" in e["message"] for e in result.side_effects)
    assert value_of(manager, app, "greet()") == "v1"


@pytest.mark.asyncio
async def test_star_reexports_propagate(manager, tmp_path):
    (tmp_path / "pkg").mkdir()
    write(tmp_path / "pkg" / "__init__.py", "from .core import *\n")
    core = write(tmp_path / "pkg" / "core.py", "value = 1\n")
    main = write(tmp_path / "main.py", "from pkg import value\n")
    assert manager.load_sync(main).status == 'success'
    assert value_of(manager, main, "value") == 1

    write(tmp_path / "pkg" / "core.py", "value = 2\n")
    await manager.update(core)
    assert value_of(manager, main, "value") == 2


# --- Top-level suspension ---

SUSPENDING = """
    import asyncio
    value = await asyncio.sleep(0, result=5)
"""


@pytest.mark.asyncio
async def test_suspending_module_switches_to_async_mode(manager, tmp_path):
    path = write(tmp_path / "m.py", SUSPENDING)
    result = await manager.load(path)
    assert result.status == 'success'
    assert manager.get_vars(path)["value"] == 5
    assert manager.get(path).is_async_mode


def test_synchronous_load_refuses_before_running(manager, tmp_path):
    path = write(tmp_path / "m.py", SUSPENDING)
    with pytest.raises(TopLevelSuspendDetectedError):
        manager.load_sync(path)
    assert "asyncio" not in manager.get_vars(path)


@pytest.mark.asyncio
async def test_sync_mode_reports_suspension_as_error(tmp_path):
    manager = ModuleManager(ReliveConfig(watch=False, mode="sync"), project_root=str(tmp_path))
    path = write(tmp_path / "m.py", SUSPENDING)
    result = await manager.load(path)
    assert result.status == 'error'
    assert isinstance(result.error, TopLevelSuspendDetectedError)


# --- Failures ---

@pytest.mark.asyncio
async def test_failed_cycle_commits_what_ran(manager, tmp_path):
    path = write(tmp_path / "m.py", """
        a = []
        a.append(1)
        b = 1 / 0
        c = 3
    """)
    result = manager.load_sync(path)
    assert result.status == 'error'
    assert "ZeroDivisionError" in result.error_message
    assert manager.get_vars(path)["c"] is None

    write(tmp_path / "m.py", """
        a = []
        a.append(1)
        b = 1
        c = 3
    """)
    result = await manager.update(path)
    assert result.status == 'success'
    assert manager.get_vars(path)["a"] == [1]
    assert manager.get_vars(path)["c"] == 3


@pytest.mark.asyncio
async def test_parse_error_leaves_module_untouched(manager, tmp_path):
    path = write(tmp_path / "m.py", "x = 1\n")
    manager.load_sync(path)
    snapshot = dict(manager.get(path).previous_fragments)

    write(tmp_path / "m.py", "x = (\n")
    result = await manager.update(path)
    assert result.status == 'error'
    assert isinstance(result.error, ParseError)
    assert manager.get_vars(path)["x"] == 1
    assert manager.get(path).previous_fragments == snapshot


def test_error_traceback_points_at_file_lines(manager, tmp_path):
    path = write(tmp_path / "m.py", """
        import os

        def boom():
            raise ValueError("bad")

        boom()
    """)
    result = manager.load_sync(path)
    assert result.status == 'error'
    [effect] = result.side_effects
    assert effect["topics"] == ["stderr"]
    text = effect["message"]
    assert f'File "{path}", line 4, in boom' in text
    assert f'File "{path}", line 6, in <module>' in text
    assert "relive_evaluator.py" not in text
    assert "|" not in text.split("ValueError")[0]


def test_traceback_lines_inside_hoisted_methods(manager, tmp_path):
    path = write(tmp_path / "box.py", """
        class Box:
            size = 1

            def check(self):
                # validate the size

                value = self.size
                raise ValueError(value)

        Box().check()
    """)
    result = manager.load_sync(path)
    assert result.status == 'error'
    text = result.side_effects[0]["message"]
    assert f'File "{path}", line 8, in check' in text
    assert f'File "{path}", line 10, in <module>' in text


def test_failed_evaluation_is_logged_as_evaluation(manager, tmp_path, caplog):
    path = write(tmp_path / "m.py", "x = 1\n")
    manager.load_sync(path)
    with caplog.at_level(logging.WARNING, logger="relive.relive_modules"):
        result = manager.eval_in_module(path, "1 / 0")
    assert result.status == 'error'
    assert f"evaluation of {path} failed" in caplog.text
    assert "update of" not in caplog.text


# --- Interactive and registry ---

@pytest.mark.asyncio
async def test_evaluation_in_module_scope(manager, tmp_path):
    path = write(tmp_path / "m.py", "base = 40\n")
    manager.load_sync(path)
    assert value_of(manager, path, "base + 2") == 42
    result = await manager.aeval_in_module(path, "import asyncio\nawait asyncio.sleep(0, result=base)")
    assert result.value == 40
    assert manager.eval_in_module(path, "1 / 0").status == 'error'


def test_registry_and_listeners(manager, tmp_path):
    created, updated = [], []
    manager.on_module_created(lambda record: created.append(record.name))
    manager.on_module_updated(lambda record, result: updated.append((record.name, result.status)))
    write(tmp_path / "lib.py", "x = 1\n")
    app = write(tmp_path / "app.py", "from lib import x\n")
    manager.load_sync(app, is_entry=True)

    assert created == ["__main__", "lib"]
    assert ("lib", "success") in updated
    assert ("__main__", "success") in updated
    assert sorted(os.path.basename(p) for p in manager.get_module_paths()) == ["app.py", "lib.py"]
    assert manager.get_vars(app) == {"x": 1}
    with pytest.raises(KeyError):
        manager.get_vars(str(tmp_path / "missing.py"))


@pytest.mark.asyncio
async def test_queued_updates_collapse(manager, tmp_path):
    path = write(tmp_path / "m.py", "x = 1\n")
    manager.load_sync(path)
    write(tmp_path / "m.py", "x = 2\n")
    record = manager.get(path)
    async with record.lock:
        tasks = [asyncio.create_task(manager.update(path)) for _ in range(3)]
        await asyncio.sleep(0)
    results = await asyncio.gather(*tasks)
    assert [r.fragments_run > 0 for r in results].count(True) == 1
    assert manager.get_vars(path)["x"] == 2


@pytest.mark.asyncio
async def test_watcher_applies_file_edits(tmp_path):
    manager = ModuleManager(ReliveConfig(watch=True, poll_interval=0.01), project_root=str(tmp_path))
    path = write(tmp_path / "m.py", "x = 1\n")
    await manager.load(path)
    updated = asyncio.Event()
    manager.on_module_updated(lambda record, result: updated.set())

    write(tmp_path / "m.py", "x = 2\n")
    await asyncio.wait_for(updated.wait(), timeout=5)
    assert manager.get_vars(path)["x"] == 2
    await manager.close()
