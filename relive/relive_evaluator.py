"""
The persistent execution context of a module.

Fragments are injected one at a time into a long-lived coroutine that owns the
module's scope; everything a fragment binds stays visible to the next one.
"""

import ast
import linecache
from typing import Any, Dict, Generator, Optional

import pystache

from relive.relive_datatypes import Outcome, TopLevelSuspendDetectedError
from relive.relive_parser import Parser
from relive.relive_transformer import bound_names, contains_top_level_suspend

END = object()
SUSPENDED_NAME = '__relive_suspended__'

_renderer = pystache.Renderer(escape=lambda u: u)

SUSPENDED_WRAPPER = """\
async def {{name}}():
{{#has_names}}
    global {{names}}
{{/has_names}}
    pass
"""


def register_source(filename: str, source: str):
    """Makes fragment text visible to tracebacks under its tracker id."""
    linecache.cache[filename] = (len(source), None, source.splitlines(keepends=True), filename)


def _globalized(stmt: ast.stmt) -> ast.stmt:
    # A name declared global cannot also be annotated.
    if isinstance(stmt, ast.AnnAssign):
        if stmt.value is None:
            return ast.copy_location(ast.Pass(), stmt)
        return ast.copy_location(ast.Assign(targets=[stmt.target], value=stmt.value), stmt)
    return stmt


class ScopedEvaluator:
    """Single-step coroutine evaluating fragments against one namespace."""

    def __init__(self, namespace: Dict[str, Any], compile_flags: int = 0):
        self.namespace = namespace
        self.compile_flags = compile_flags
        self.parser = Parser()
        self._context = self._run()
        next(self._context)

    def _run(self) -> Generator[Optional[Outcome], Any, None]:
        request = yield None
        while request is not END:
            tree, filename = request
            try:
                outcome = Outcome(value=self._evaluate(tree, filename))
            except BaseException as e:
                # Raised again by the caller; only END ends the context.
                outcome = Outcome(error=e)
            request = yield outcome

    def _evaluate(self, tree: ast.Module, filename: str) -> Any:
        flags = self.compile_flags
        if len(tree.body) == 1 and isinstance(tree.body[0], ast.Expr):
            expression = ast.Expression(body=tree.body[0].value)
            code = compile(expression, filename, 'eval', flags=flags, dont_inherit=True)
            return eval(code, self.namespace)
        code = compile(tree, filename, 'exec', flags=flags, dont_inherit=True)
        exec(code, self.namespace)
        return None

    def _send(self, tree: ast.Module, filename: str) -> Any:
        if self.closed:
            raise RuntimeError("evaluator is closed")
        outcome = self._context.send((tree, filename))
        if outcome.error is not None:
            raise outcome.error
        return outcome.value

    @property
    def closed(self) -> bool:
        return self._context.gi_frame is None

    def submit(self, source: str, filename: str = '<relive>') -> Any:
        """Runs a fragment; returns the value of a lone expression, else None.

        Raises TopLevelSuspendDetectedError, without running anything, when the
        fragment suspends at top level.
        """
        tree = self.parser.parse(source, filename)
        if contains_top_level_suspend(tree):
            raise TopLevelSuspendDetectedError(f"{filename} suspends at top level")
        register_source(filename, source)
        return self._send(tree, filename)

    async def submit_async(self, source: str, filename: str = '<relive>') -> Any:
        """Runs a fragment inside a coroutine so it may suspend."""
        tree = self.parser.parse(source, filename)
        names = []
        for stmt in tree.body:
            names.extend(n for n in bound_names(stmt) if n not in names)
        wrapper = ast.parse(_renderer.render(SUSPENDED_WRAPPER, {
            'name': SUSPENDED_NAME,
            'has_names': bool(names),
            'names': ", ".join(names),
        }))
        function = wrapper.body[0]
        body = [_globalized(stmt) for stmt in tree.body]
        if body and isinstance(body[-1], ast.Expr):
            body[-1] = ast.copy_location(ast.Return(value=body[-1].value), body[-1])
        # The wrapper header is synthetic; the body keeps its own line numbers.
        function.body = function.body[:-1] + body
        register_source(filename, source)
        self._send(wrapper, filename)
        coroutine_function = self.namespace.pop(SUSPENDED_NAME)
        return await coroutine_function()

    def close(self):
        if not self.closed:
            try:
                self._context.send(END)
            except StopIteration:
                pass
