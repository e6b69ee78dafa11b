"""Static import-graph regression tests for the permission pipeline."""

from __future__ import annotations

import ast
from pathlib import Path


TARGET_MODULES = [
    "cmdguard.utils.shell_token_utils",
    "cmdguard.utils.permissions.errors",
    "cmdguard.utils.permissions.segmentation",
    "cmdguard.utils.permissions.invocation",
    "cmdguard.utils.permissions.interpreter",
    "cmdguard.utils.permissions.rule_syntax",
    "cmdguard.utils.permissions.destructive",
    "cmdguard.utils.permissions.tool_permission_utils",
    "cmdguard.core.presets",
    "cmdguard.core.policy",
    "cmdguard.core.permission_engine",
    "cmdguard.core.permissions",
    "cmdguard.core.project_inference",
    "cmdguard.core.config",
]


def _module_path(module_name: str) -> Path:
    root = Path(__file__).resolve().parents[1]
    rel = module_name.replace(".", "/") + ".py"
    return root / rel


def _is_type_checking_block(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.If)
        and isinstance(node.test, ast.Name)
        and node.test.id == "TYPE_CHECKING"
    )


def _runtime_imports(tree: ast.Module):
    stack = list(tree.body)
    while stack:
        node = stack.pop()
        if _is_type_checking_block(node):
            continue
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            yield node
        stack.extend(ast.iter_child_nodes(node))


def _collect_edges(module_name: str, all_modules: set[str]) -> set[tuple[str, str]]:
    path = _module_path(module_name)
    source = path.read_text(encoding="utf-8")
    tree = ast.parse(source, filename=str(path))
    edges: set[tuple[str, str]] = set()

    for node in _runtime_imports(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name in all_modules:
                    edges.add((module_name, alias.name))
        else:
            if not node.module:
                continue
            from_module = node.module
            if from_module in all_modules:
                edges.add((module_name, from_module))
                continue
            for alias in node.names:
                candidate = f"{from_module}.{alias.name}"
                if candidate in all_modules:
                    edges.add((module_name, candidate))

    return edges


def _has_cycle(nodes: set[str], edges: set[tuple[str, str]]) -> bool:
    adjacency: dict[str, set[str]] = {node: set() for node in nodes}
    for src, dst in edges:
        adjacency.setdefault(src, set()).add(dst)

    visiting: set[str] = set()
    visited: set[str] = set()

    def dfs(node: str) -> bool:
        if node in visiting:
            return True
        if node in visited:
            return False
        visiting.add(node)
        for nxt in adjacency.get(node, ()):
            if dfs(nxt):
                return True
        visiting.remove(node)
        visited.add(node)
        return False

    return any(dfs(node) for node in nodes)


def test_permission_pipeline_has_no_directed_cycle() -> None:
    module_set = set(TARGET_MODULES)
    edges: set[tuple[str, str]] = set()
    for module_name in TARGET_MODULES:
        edges.update(_collect_edges(module_name, module_set))

    assert not _has_cycle(module_set, edges)


def test_parsing_layers_do_not_import_policy() -> None:
    module_set = set(TARGET_MODULES)
    parsing = {
        "cmdguard.utils.shell_token_utils",
        "cmdguard.utils.permissions.segmentation",
        "cmdguard.utils.permissions.invocation",
    }
    for module_name in parsing:
        targets = {dst for _, dst in _collect_edges(module_name, module_set)}
        assert not any(target.startswith("cmdguard.core") for target in targets), module_name
