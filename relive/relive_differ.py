"""
Computes the fragments an edit requires: what to declare, what to retract and
what to (re)run, given the last committed snapshot of a file.
"""

from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from relive.relive_datatypes import Diff, Fragment, Program, TopLevelNode
from relive.relive_printer import Printer
from relive.relive_transformer import declare_code, forget_code


def occurrence_keys(nodes: Iterable[TopLevelNode]) -> Iterator[Tuple[str, TopLevelNode]]:
    """Pairs each node with a key unique within the file.

    Repeated statements (two identical `print()` calls) keep separate identities
    by occurrence: the second is `key\\x00#2`.
    """
    seen: Dict[str, int] = {}
    for node in nodes:
        count = seen.get(node.key, 0) + 1
        seen[node.key] = count
        yield (node.key if count == 1 else f"{node.key}\x00#{count}"), node


class SnapshotDiffer:
    """Compares the committed snapshot of a file against a fresh transform."""

    def __init__(self, printer: Optional[Printer] = None):
        self.printer = printer or Printer()

    def fragment(self, node: TopLevelNode, path: str, key: Optional[str] = None) -> Fragment:
        """The run fragment for a node."""
        text = node.source_text
        digest = self.printer.content_hash(text)
        return Fragment(
            source_text=text,
            content_hash=digest,
            tracker_id=f"{path}|{digest}",
            kind='run',
            is_async=node.has_top_level_suspend,
            defined_names=node.defined_names,
            key=key if key is not None else node.key,
            line=node.line,
        )

    def _code_fragment(self, text: str, path: str, **fields) -> Fragment:
        digest = self.printer.content_hash(text)
        return Fragment(source_text=text, content_hash=digest,
                        tracker_id=f"{path}|{digest}", **fields)

    def diff(self, previous: Dict[str, TopLevelNode],
             current: Union[Program, List[TopLevelNode]], path: str) -> Diff:
        nodes = current.nodes if isinstance(current, Program) else current
        remaining = dict(previous)
        latest: Dict[str, TopLevelNode] = {}
        emit: Dict[str, bool] = {}
        touched_groups = set()

        for key, node in occurrence_keys(nodes):
            old = remaining.pop(key, None)
            if old is not None:
                # Keep the text that actually ran so its tracker id stays valid.
                table = node.line_table if old.source_text == node.source_text else ()
                latest[key] = replace(node, source_text=old.source_text, line_table=table)
                emit[key] = False
            else:
                latest[key] = node
                emit[key] = True
                if node.group_label is not None:
                    touched_groups.add(node.group_label)

        # A touched group is re-applied as a whole.
        for key, node in latest.items():
            if not emit[key] and node.group_label in touched_groups and not node.group_anchor:
                emit[key] = True

        runs = [(key, node) for key, node in latest.items() if emit[key]]
        provided = set()
        added_names: List[str] = []
        for _, node in runs:
            provided.update(node.provides)
            for name in node.defined_names:
                if name not in added_names:
                    added_names.append(name)

        fragments: List[Fragment] = []
        declared = [name for name in added_names if name.isidentifier()]
        if declared:
            fragments.append(self._code_fragment(declare_code(declared), path, kind='declare',
                                                 defined_names=tuple(declared)))

        removed = sorted(enumerate(remaining.items()), key=lambda e: (e[1][1].line, e[0]), reverse=True)
        for _, (key, old) in removed:
            fragment = self._removal(key, old, provided, path)
            if fragment is not None:
                fragments.append(fragment)

        fragments.extend(self.fragment(node, path, key) for key, node in runs)

        offsets = {}
        line_tables = {}
        for node in latest.values():
            digest = self.printer.content_hash(node.source_text)
            offsets[digest] = node.line
            if node.line_table:
                line_tables[digest] = node.line_table
        return Diff(fragments=fragments, latest=latest, offsets=offsets, line_tables=line_tables)

    def _removal(self, key: str, old: TopLevelNode, provided: set, path: str) -> Optional[Fragment]:
        if not old.removal_code:
            return None
        provides = old.provides
        if provides and all(p in provided for p in provides):
            # Moved or changed in place: the new statement rebinds everything.
            return None
        retracted = tuple(name for name in old.defined_names if name not in provided)
        code = old.removal_code
        if old.member_name is None and old.defined_names and code == forget_code(old.defined_names):
            code = forget_code(retracted)
        return self._code_fragment(code, path, kind='remove', retracted_names=retracted,
                                   key=key, line=old.line)
