"""
Prints syntax-tree nodes back to source and derives stable content identities.
"""

import ast
import hashlib
from typing import Dict, Optional, Tuple

HASH_LENGTH = 16


class Printer:
    """Formats AST nodes into canonical Python source."""

    def print_node(self, node: ast.AST) -> str:
        return ast.unparse(node)

    def normalize(self, node: ast.AST) -> str:
        """The identity form of a statement.

        Unparsing drops comments and re-flows whitespace outside literals, so
        formatting-only edits map to the same text; string contents stay
        significant.
        """
        return self.print_node(node).strip()

    def content_hash(self, text: str) -> str:
        return hashlib.sha256(text.encode('utf-8')).hexdigest()[:HASH_LENGTH]

    def tracker_id(self, path: str, text: str) -> str:
        """The pseudo filename fragments are compiled under: `path|hash`."""
        return f"{path}|{self.content_hash(text)}"

    def line_table(self, node: ast.AST, text: str, start: int) -> Tuple[int, ...]:
        """File line of every line of `text`, the printed form of `node`.

        Printing drops comments and blank lines, so the lines are recovered by
        walking `node` alongside a reparse of `text`. Nodes without a location
        take the line of the text line above them.
        """
        try:
            printed = ast.parse(text)
        except SyntaxError:
            return ()
        original = node if isinstance(node, ast.Module) else ast.Module(body=[node], type_ignores=[])
        found: Dict[int, int] = {}
        for before, after in zip(ast.walk(original), ast.walk(printed)):
            if type(before) is not type(after):
                break
            line = getattr(before, 'lineno', None)
            if line is None or getattr(after, 'lineno', None) is None:
                continue
            found[after.lineno] = min(line, found.get(after.lineno, line))
        table = []
        current = start
        for index in range(1, text.count('\n') + 2):
            current = found.get(index, current)
            table.append(current)
        return tuple(table)

    def start_line(self, node: ast.stmt) -> int:
        start = node.lineno
        for decorator in getattr(node, 'decorator_list', None) or []:
            start = min(start, decorator.lineno)
        return start

    def source_segment(self, source: str, node: ast.stmt) -> Optional[str]:
        """Original text of a top-level statement, decorators included."""
        lines = source.splitlines(keepends=True)
        start = self.start_line(node)
        end = getattr(node, 'end_lineno', None)
        if end is None or start < 1 or end > len(lines):
            return None
        if node.col_offset != 0:
            # Several statements on one line (`a = 1; b = 2`): no clean segment.
            return None
        segment_lines = lines[start - 1:end]
        last = segment_lines[-1]
        end_col = getattr(node, 'end_col_offset', None)
        if end_col is not None:
            # Only slice when the statement stops short of the line's end.
            encoded = last.encode('utf-8')
            rest = encoded[end_col:].decode('utf-8', errors='replace').strip()
            if rest and not rest.startswith('#'):
                return None
        return ''.join(segment_lines).rstrip()
