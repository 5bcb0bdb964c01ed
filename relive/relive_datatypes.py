"""
Defines the core data types for the relive engine.

This module provides the records passed between the transformer, the differ
and the module manager, plus the error taxonomy every stage reports with.
"""

import ast
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple


# =================================================================
# Errors
# =================================================================

class ReliveError(Exception):
    """Base class for every failure raised by the engine itself."""
    pass


class ParseError(ReliveError):
    """Malformed source. `incomplete` is True when more input could fix it."""
    def __init__(self, message: str, *, incomplete: bool = False,
                 line: Optional[int] = None, col: Optional[int] = None,
                 filename: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.incomplete = incomplete
        self.line = line
        self.col = col
        self.filename = filename

    def __str__(self) -> str:
        if self.line is not None:
            col = f", col {self.col}" if self.col is not None else ""
            return f"{self.message} (line {self.line}{col})"
        return self.message


class UnsupportedConstructError(ReliveError):
    """A top-level statement shape the transformer does not desugar."""
    def __init__(self, kind: str, line: Optional[int] = None):
        where = f" on line {line}" if line is not None else ""
        super().__init__(f"unexpected node kind '{kind}'{where}")
        self.kind = kind
        self.line = line


class TopLevelSuspendDetectedError(ReliveError):
    """Signal: the fragment needs a suspension-tolerant (async) caller."""
    pass


class EvaluationError(ReliveError):
    """A fragment raised while running in its module's scope."""
    def __init__(self, fragment: 'Fragment', original: BaseException):
        super().__init__(f"{type(original).__name__}: {original}")
        self.fragment = fragment
        self.original = original


class PropagationError(ReliveError):
    """Re-running a dependent's linkage statement failed."""
    def __init__(self, dependent: str, target: str, original: BaseException):
        super().__init__(
            f"failed to relink {dependent} after {target} changed: "
            f"{type(original).__name__}: {original}")
        self.dependent = dependent
        self.target = target
        self.original = original


# =================================================================
# Transform output
# =================================================================

@dataclass(frozen=True, eq=False)
class TopLevelNode:
    """One desugared top-level statement and the metadata the differ needs.

    `key` is the normalized text used as identity across edits, while
    `source_text` is what actually gets executed. The two differ when the
    statement was not rewritten: the original source segment is kept so that
    line numbers inside the fragment match the file.
    """
    node: ast.AST
    key: str
    source_text: str
    line: int = 1
    defined_names: Tuple[str, ...] = ()
    removal_code: Optional[str] = None
    has_top_level_suspend: bool = False
    group_label: Optional[str] = None
    group_anchor: bool = False
    member_name: Optional[str] = None
    import_targets: Tuple[str, ...] = ()
    line_table: Tuple[int, ...] = ()

    @property
    def provides(self) -> Tuple[str, ...]:
        """Identities this statement creates; members are qualified by group."""
        if self.member_name is not None and self.group_label is not None:
            return self.defined_names + (f"{self.group_label}.{self.member_name}",)
        return self.defined_names


@dataclass
class Program:
    """Result of desugaring one file."""
    nodes: List[TopLevelNode] = field(default_factory=list)
    compile_flags: int = 0


# =================================================================
# Differ output
# =================================================================

FragmentKind = Literal['declare', 'remove', 'run']


@dataclass(frozen=True)
class Fragment:
    """The unit of re-execution."""
    source_text: str
    content_hash: str
    tracker_id: str
    kind: FragmentKind = 'run'
    is_async: bool = False
    defined_names: Tuple[str, ...] = ()
    retracted_names: Tuple[str, ...] = ()
    key: Optional[str] = None
    line: int = 1


@dataclass
class Diff:
    fragments: List[Fragment] = field(default_factory=list)
    latest: Dict[str, TopLevelNode] = field(default_factory=dict)
    offsets: Dict[str, int] = field(default_factory=dict)
    line_tables: Dict[str, Tuple[int, ...]] = field(default_factory=dict)


# =================================================================
# Evaluation results
# =================================================================

@dataclass(frozen=True)
class Outcome:
    """What the scoped evaluator yields back after each fragment."""
    value: Any = None
    error: Optional[BaseException] = None


@dataclass
class UpdateResult:
    """The structured result of an update cycle (or a REPL evaluation)."""
    status: Literal['success', 'error']
    path: Optional[str] = None
    value: Any = None
    fragments_run: int = 0
    error: Optional[BaseException] = None
    error_message: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats the error with the module path when known."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.path and not msg.startswith("Error in "):
            return f"Error in {self.path}: {msg}"
        return msg
