"""
Resolves import specifiers to files of the live project.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Resolution:
    specifier: str
    path: Optional[str]
    is_project: bool


def module_name_for(path: str, project_root: str) -> str:
    """Dotted module name of a project file, e.g. `pkg.mod` or `pkg`."""
    rel = os.path.relpath(path, project_root)
    if rel.startswith(os.pardir):
        rel = os.path.basename(path)
    stem, _ = os.path.splitext(rel)
    parts = [p for p in stem.split(os.sep) if p and p != os.curdir]
    if parts and parts[-1] == '__init__':
        parts.pop()
    return ".".join(parts) or os.path.splitext(os.path.basename(path))[0]


class ModuleResolver:
    """Maps a specifier to a project file (live, watched) or an external module."""

    def __init__(self, project_root: str):
        self.project_root = os.path.abspath(project_root)

    def _find(self, base: str, parts) -> Optional[str]:
        candidate = os.path.join(base, *parts)
        if parts:
            module_file = candidate + '.py'
            if os.path.isfile(module_file):
                return os.path.abspath(module_file)
        package_init = os.path.join(candidate, '__init__.py')
        if os.path.isfile(package_init):
            return os.path.abspath(package_init)
        return None

    def resolve(self, specifier: str, from_directory: Optional[str] = None) -> Resolution:
        stripped = specifier.lstrip('.')
        level = len(specifier) - len(stripped)
        parts = [p for p in stripped.split('.') if p]
        if level:
            base = os.path.abspath(from_directory or self.project_root)
            for _ in range(level - 1):
                base = os.path.dirname(base)
            path = self._find(base, parts)
            if path is None:
                raise ImportError(f"cannot resolve relative import '{specifier}' from {base}")
            return Resolution(specifier, path, True)
        path = self._find(self.project_root, parts) if parts else None
        if path is not None:
            return Resolution(specifier, path, True)
        return Resolution(specifier, None, False)
