"""Tests for the virtual package tree."""

import json
import os

import pytest

from monolink.errors import AlreadyParentedError, DuplicateChildError
from monolink.graph import (
    PackageDependencyKind,
    PackageLookup,
    VirtualPackageNode,
    dependencies_from_package_json,
    load_installed_tree,
)


def node(name, version="1.0.0"):
    return VirtualPackageNode(name, version, f"/pkgs/{name}")


class TestVirtualPackageNode:
    """Parent/child contract and Node-style resolution."""

    def test_duplicate_child_is_rejected(self):
        root = node("root")
        root.add_child(node("a"))
        with pytest.raises(DuplicateChildError):
            root.add_child(node("a", "2.0.0"))

    def test_child_cannot_have_two_parents(self):
        child = node("a")
        node("root").add_child(child)
        with pytest.raises(AlreadyParentedError):
            node("other").add_child(child)

    def test_nearest_ancestor_wins(self):
        root = node("root")
        a = node("a")
        root.add_child(a)
        root.add_child(node("b", "1.0.0"))
        nested_b = node("b", "2.0.0")
        a.add_child(nested_b)
        assert a.resolve("b") is nested_b
        assert root.resolve("b").version == "1.0.0"
        assert a.resolve("missing") is None

    def test_resolve_or_create_picks_the_highest_node(self):
        root = node("root")
        a = node("a")
        root.add_child(a)
        c = node("c")
        a.add_child(c)
        result = c.resolve_or_create("x")
        assert result.found is None
        assert result.parent_for_create is root

    def test_resolve_or_create_reports_the_shadowing_point(self):
        root = node("root")
        a = node("a")
        root.add_child(a)
        x = node("x")
        root.add_child(x)
        result = a.resolve_or_create("x")
        assert result.found is x
        assert result.parent_for_create is a
        assert root.resolve_or_create("x").parent_for_create is None

    def test_cyclic_boundary_stops_the_search(self):
        root = node("root")
        root.add_child(node("x"))
        boundary = node("lib")
        root.add_child(boundary)
        inner = node("inner")
        boundary.add_child(inner)
        result = inner.resolve_or_create("x", cyclic_subtree_root=boundary)
        assert result.found is None
        assert result.parent_for_create is boundary

    def test_walk_is_depth_first(self):
        root = node("root")
        a, b, c = node("a"), node("b"), node("c")
        root.add_child(a)
        root.add_child(b)
        a.add_child(c)
        assert [n.name for n in root.walk()] == ["root", "a", "c", "b"]


class TestPackageLookup:
    """First visited package wins."""

    def test_first_wins(self):
        root = node("root")
        first = node("a")
        root.add_child(first)
        holder = node("holder")
        root.add_child(holder)
        holder.add_child(VirtualPackageNode("a", "1.0.0", "/elsewhere/a"))
        lookup = PackageLookup()
        lookup.load_tree(root)
        assert lookup.get_package("a@1.0.0") is first
        assert lookup.get_package("a@9.9.9") is None


def test_dependencies_from_package_json_kinds():
    dependencies = dependencies_from_package_json(
        {
            "dependencies": {"a": "^1.0.0", "b": "^2.0.0"},
            "optionalDependencies": {"b": "^2.0.0"},
            "monolinkDependencies": {"lib": "^1.0.0"},
        }
    )
    kinds = {dep.name: dep.kind for dep in dependencies}
    assert kinds == {
        "a": PackageDependencyKind.REGULAR,
        "b": PackageDependencyKind.OPTIONAL,
        "lib": PackageDependencyKind.LOCAL_LINK,
    }


def _package(folder, name, version, **extra):
    os.makedirs(folder, exist_ok=True)
    data = {"name": name, "version": version}
    data.update(extra)
    with open(os.path.join(folder, "package.json"), "w", encoding="utf-8") as fh:
        json.dump(data, fh)


class TestLoadInstalledTree:
    """Reading a real node_modules layout."""

    def test_nested_and_scoped_packages(self, tmp_path):
        root = str(tmp_path)
        _package(root, "monolink-common", "0.0.0", dependencies={"a": "1.0.0"})
        _package(os.path.join(root, "node_modules", "a"), "a", "1.0.0", dependencies={"b": "2.0.0"})
        _package(os.path.join(root, "node_modules", "a", "node_modules", "b"), "b", "2.0.0")
        _package(os.path.join(root, "node_modules", "@scope", "c"), "@scope/c", "3.0.0")
        os.makedirs(os.path.join(root, "node_modules", ".bin"))

        tree = load_installed_tree(root)
        assert tree.name == "monolink-common"
        assert sorted(child.name for child in tree.children) == ["@scope/c", "a"]
        a = tree.get_child_by_name("a")
        assert a.get_child_by_name("b").version == "2.0.0"
        assert a.dependencies[0].name == "b"

    def test_links_are_not_descended(self, tmp_path):
        real = tmp_path / "real"
        _package(str(real), "linked", "1.0.0")
        _package(str(real / "node_modules" / "deep"), "deep", "1.0.0")
        root = tmp_path / "root"
        _package(str(root), "root", "0.0.0")
        os.makedirs(root / "node_modules")
        os.symlink(str(real), str(root / "node_modules" / "linked"))

        tree = load_installed_tree(str(root))
        linked = tree.get_child_by_name("linked")
        assert linked.folder_path == os.path.realpath(str(real))
        assert linked.children == []
