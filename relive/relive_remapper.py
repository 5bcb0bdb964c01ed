"""
Maps locations inside executed fragments back to lines of the original file.
"""

import re
import traceback
from typing import Dict, List, Optional, Tuple

LOCATION_PATTERN = re.compile(r'\(([^()|]+)\|([0-9a-f]+):(\d+):(\d+)\)')
FRAME_PATTERN = re.compile(r'File "([^"|]+)\|([0-9a-f]+)", line (\d+)')
INTERNAL_FRAME_PATTERN = re.compile(r'^\s*File ".*[\\/]relive_(evaluator|modules)\.py", line \d+')


class SourceRemapper:
    """Keeps `content hash -> original start line` and rewrites stack text."""

    def __init__(self):
        self.offsets: Dict[str, int] = {}
        self.line_tables: Dict[str, Tuple[int, ...]] = {}

    def update_offsets(self, mapping: Dict[str, int],
                       line_tables: Optional[Dict[str, Tuple[int, ...]]] = None):
        """`line_tables` covers fragments whose text is not a verbatim slice of the file."""
        # Hashes of retired fragments stay known: closures from them can still fail.
        self.offsets.update(mapping)
        line_tables = line_tables or {}
        for digest in mapping:
            if digest in line_tables:
                self.line_tables[digest] = line_tables[digest]
            else:
                self.line_tables.pop(digest, None)

    def original_line(self, content_hash: str, line: int) -> Optional[int]:
        table = self.line_tables.get(content_hash)
        if table and 1 <= line <= len(table):
            return table[line - 1]
        offset = self.offsets.get(content_hash)
        if offset is None:
            return None
        return offset + line - 1

    def _rewrite_location(self, match: re.Match) -> str:
        path, digest, line, col = match.groups()
        mapped = self.original_line(digest, int(line))
        if mapped is None:
            return match.group(0)
        return f"({path}:{mapped}:{col})"

    def _rewrite_frame(self, match: re.Match) -> str:
        path, digest, line = match.groups()
        mapped = self.original_line(digest, int(line))
        if mapped is None:
            return match.group(0)
        return f'File "{path}", line {mapped}'

    def reformat_line(self, line: str) -> str:
        line = LOCATION_PATTERN.sub(self._rewrite_location, line)
        return FRAME_PATTERN.sub(self._rewrite_frame, line)

    def reformat_stack(self, text: str) -> str:
        out: List[str] = []
        skipping = False
        for line in text.splitlines():
            if INTERNAL_FRAME_PATTERN.match(line):
                skipping = True
                continue
            if skipping:
                # The frame's code and caret lines are indented deeper than "  File".
                if line.startswith('    '):
                    continue
                skipping = False
            out.append(self.reformat_line(line))
        return "\n".join(out)

    def format_exception(self, exc: BaseException) -> str:
        text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return self.reformat_stack(text)
