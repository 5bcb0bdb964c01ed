"""
Parses Python source into an `ast.Module`, telling truncated input apart from
genuine syntax errors.
"""

import ast
import codeop
import warnings

from relive.relive_datatypes import ParseError


class Parser:
    """Thin wrapper over `ast.parse` used by every stage that reads source."""

    def parse(self, source: str, filename: str = '<relive>') -> ast.Module:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', SyntaxWarning)
                return ast.parse(source, filename=filename, mode='exec')
        except SyntaxError as e:
            raise ParseError(
                e.msg or "invalid syntax",
                incomplete=self.is_incomplete(source, filename),
                line=e.lineno,
                col=e.offset,
                filename=filename,
            ) from e

    def is_incomplete(self, source: str, filename: str = '<relive>') -> bool:
        """True when `source` is a prefix of some valid program.

        As at the interactive prompt, an open compound statement (`def f():`
        plus its body so far) counts as incomplete until a blank line closes it.
        """
        if not source.strip():
            return False
        return self._needs_more(source, filename, 'exec') or self._needs_more(source, filename, 'single')

    def _needs_more(self, source: str, filename: str, symbol: str) -> bool:
        # A fresh compiler each time: CommandCompiler remembers __future__ flags.
        compiler = codeop.CommandCompiler()
        compiler.compiler.flags |= ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', SyntaxWarning)
                code = compiler(source, filename, symbol)
        except (SyntaxError, ValueError, OverflowError):
            return False
        return code is None
