"""Lightweight import graph over the Python files of a workspace.

The graph only contains edges between workspace files; imports of the
standard library or installed packages are ignored. Files that fail to
parse (which is common while an agent is mid-fix) are scanned with a
regular expression instead so the planner still sees their neighbours.
"""

import ast
import re
from dataclasses import dataclass, field
from posixpath import dirname
from typing import Literal

import structlog

logger = structlog.get_logger()

_IMPORT_LINE = re.compile(
    r"^\s*(?:from\s+(?P<from>\.*[\w.]*)\s+import\s+(?P<names>[\w, ()*]+)"
    r"|import\s+(?P<modules>[\w., ]+))",
    re.MULTILINE,
)


@dataclass
class DepEdge:
    source: str
    target: str
    kind: Literal["import", "from"]


@dataclass
class DepGraph:
    """Import relationships between workspace files.

    Attributes:
        nodes: All file paths, sorted
        edges: One edge per resolved import statement
        adjacency: Sorted, de-duplicated targets per source path
    """

    nodes: list[str] = field(default_factory=list)
    edges: list[DepEdge] = field(default_factory=list)
    adjacency: dict[str, list[str]] = field(default_factory=dict)

    def neighbours(self, path: str) -> set[str]:
        """Files imported by ``path`` plus files that import it."""
        result = set(self.adjacency.get(path, []))
        result.update(src for src, targets in self.adjacency.items() if path in targets)
        result.discard(path)
        return result


def _module_candidates(module: str) -> list[str]:
    base = module.replace(".", "/")
    return [f"{base}.py", f"{base}/__init__.py"]


def _package_dir(path: str, level: int) -> str | None:
    """Directory a relative import of ``level`` dots resolves against."""
    directory = dirname(path)
    for _ in range(level - 1):
        if not directory:
            return None
        directory = dirname(directory)
    return directory


def _resolve(
    source: str,
    module: str,
    level: int,
    names: list[str],
    paths: set[str],
) -> list[str]:
    if level:
        package = _package_dir(source, level)
        if package is None:
            return []
        prefix = package.replace("/", ".")
        module = ".".join(part for part in (prefix, module) if part)

    targets: list[str] = []
    if module:
        targets.extend(c for c in _module_candidates(module) if c in paths)
    # "from pkg import mod" may name a submodule rather than an attribute
    for name in names:
        if name == "*":
            continue
        qualified = f"{module}.{name}" if module else name
        targets.extend(c for c in _module_candidates(qualified) if c in paths)
    return targets


def _imports_from_ast(tree: ast.AST) -> list[tuple[str, int, list[str], str]]:
    found: list[tuple[str, int, list[str], str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                found.append((alias.name, 0, [], "import"))
        elif isinstance(node, ast.ImportFrom):
            found.append(
                (node.module or "", node.level, [a.name for a in node.names], "from")
            )
    return found


def _imports_from_text(content: str) -> list[tuple[str, int, list[str], str]]:
    found: list[tuple[str, int, list[str], str]] = []
    for match in _IMPORT_LINE.finditer(content):
        if match.group("from") is not None:
            spec = match.group("from")
            level = len(spec) - len(spec.lstrip("."))
            names = [
                n.strip().split(" as ")[0]
                for n in match.group("names").strip("() ").split(",")
                if n.strip()
            ]
            found.append((spec.lstrip("."), level, names, "from"))
        else:
            for module in match.group("modules").split(","):
                module = module.strip().split(" as ")[0].strip()
                if module:
                    found.append((module, 0, [], "import"))
    return found


def build_dependency_graph(files: dict[str, str]) -> DepGraph:
    """Build the import graph for a map of path to content.

    Args:
        files: Workspace files keyed by normalized path

    Returns:
        A DepGraph whose edges only point at paths present in ``files``.
    """
    paths = set(files)
    graph = DepGraph(nodes=sorted(paths))

    for source in graph.nodes:
        if not source.endswith(".py"):
            graph.adjacency[source] = []
            continue

        content = files[source]
        try:
            imports = _imports_from_ast(ast.parse(content, filename=source))
        except (SyntaxError, ValueError):
            logger.debug("dependency_parse_fallback", path=source)
            imports = _imports_from_text(content)

        targets: set[str] = set()
        for module, level, names, kind in imports:
            for target in _resolve(source, module, level, names, paths):
                if target == source:
                    continue
                graph.edges.append(DepEdge(source=source, target=target, kind=kind))
                targets.add(target)
        graph.adjacency[source] = sorted(targets)

    return graph
