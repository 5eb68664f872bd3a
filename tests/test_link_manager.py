"""Tests for building project node_modules folders out of links."""

import json
import os

import pytest

from monolink.config import RepoConfiguration
from monolink.constants import PackageManagers
from monolink.errors import MonolinkError
from monolink.graph import PackageLookup, load_installed_tree
from monolink.link_manager import LinkManager
from monolink.project import DependencyType, Project, ProjectDependency


def write_package(folder, name, version, **extra):
    os.makedirs(folder, exist_ok=True)
    data = {"name": name, "version": version}
    data.update(extra)
    with open(os.path.join(folder, "package.json"), "w", encoding="utf-8") as fh:
        json.dump(data, fh)


def make_config(root, package_manager=PackageManagers.NPM):
    return RepoConfiguration(
        repo_root=str(root),
        package_manager=package_manager,
        package_manager_version="9.0.0",
        global_folder=str(root / "global"),
    )


def make_project(root, name, version="1.0.0", cyclic=(), dependencies=None):
    folder = str(root / name)
    write_package(folder, name, version, dependencies=dependencies or {})
    return Project(
        name=name,
        version=version,
        folder=folder,
        dependencies=tuple(
            ProjectDependency(dep, spec, DependencyType.REGULAR) for dep, spec in (dependencies or {}).items()
        ),
        cyclic_dependency_projects=frozenset(cyclic),
    )


class TestNpmLinking:
    """Tree installs produced by npm or yarn."""

    def _install(self, temp, temp_dependencies, packages, others=()):
        """Lay out temp/node_modules with temp packages for "a" and any other projects."""
        temp_packages = {"a": temp_dependencies}
        temp_packages.update({name: {} for name in others})
        write_package(
            temp,
            "monolink-common",
            "0.0.0",
            dependencies={f"@monolink-temp/{name}": f"file:./projects/{name}.tgz" for name in temp_packages},
        )
        for name, dependencies in temp_packages.items():
            write_package(
                os.path.join(temp, "node_modules", "@monolink-temp", name),
                f"@monolink-temp/{name}",
                "0.0.0",
                dependencies=dependencies,
            )
        for name, (version, dependencies) in packages.items():
            write_package(os.path.join(temp, "node_modules", name), name, version, dependencies=dependencies)
        os.makedirs(os.path.join(temp, "node_modules", ".bin"), exist_ok=True)

    def test_satisfied_sibling_is_linked_directly(self, tmp_path):
        config = make_config(tmp_path)
        x = make_project(tmp_path, "x", "1.2.0", dependencies={"left-pad": "^1.0.0"})
        a = make_project(tmp_path, "a", dependencies={"x": "^1.0.0", "left-pad": "^1.0.0"})
        self._install(
            config.temp_folder, {"x": "^1.0.0", "left-pad": "^1.0.0"}, {"left-pad": ("1.3.0", {})}, others=["x"]
        )

        assert LinkManager(config, [a, x]).create_symlinks_for_projects() is True

        x_link = os.path.join(a.folder, "node_modules", "x")
        assert os.path.islink(x_link)
        assert os.path.realpath(x_link) == os.path.realpath(x.folder)
        pad_link = os.path.join(a.folder, "node_modules", "left-pad")
        assert os.path.realpath(pad_link) == os.path.realpath(
            os.path.join(config.temp_folder, "node_modules", "left-pad")
        )
        assert os.path.islink(os.path.join(a.folder, "node_modules", ".bin"))

    def test_tree_shape_for_sibling_link(self, tmp_path):
        config = make_config(tmp_path)
        x = make_project(tmp_path, "x", "1.2.0")
        a = make_project(tmp_path, "a", dependencies={"x": "^1.0.0"})
        self._install(config.temp_folder, {"x": "^1.0.0"}, {}, others=["x"])

        manager = LinkManager(config, [a, x])
        common_root = load_installed_tree(config.temp_folder)
        lookup = PackageLookup()
        lookup.load_tree(common_root)
        root = manager.build_npm_project_tree(a, common_root, lookup)
        assert [child.name for child in root.children] == ["x"]
        assert root.children[0].children == []
        assert root.children[0].symlink_target_folder_path == x.folder

    def test_incompatible_sibling_uses_the_shared_install(self, tmp_path):
        config = make_config(tmp_path)
        x = make_project(tmp_path, "x", "1.2.0")
        a = make_project(tmp_path, "a", dependencies={"x": "^2.0.0"})
        self._install(config.temp_folder, {"x": "^2.0.0"}, {"x": ("2.0.1", {})}, others=["x"])

        LinkManager(config, [a, x]).create_symlinks_for_projects()
        assert os.path.realpath(os.path.join(a.folder, "node_modules", "x")) == os.path.realpath(
            os.path.join(config.temp_folder, "node_modules", "x")
        )

    def test_cyclic_dependency_gets_its_own_subtree(self, tmp_path):
        config = make_config(tmp_path)
        x = make_project(tmp_path, "x", "1.2.0")
        a = make_project(tmp_path, "a", cyclic=("x",), dependencies={"left-pad": "^1.0.0", "x": "^1.0.0"})
        self._install(
            config.temp_folder,
            {"left-pad": "^1.0.0", "x": "^1.0.0"},
            {"left-pad": ("1.3.0", {}), "x": ("1.0.0", {"left-pad": "^1.0.0"})},
            others=["x"],
        )

        LinkManager(config, [a, x]).create_symlinks_for_projects()
        x_folder = os.path.join(a.folder, "node_modules", "x")
        # Published x is used, and nothing outside its subtree is shared with it.
        assert not os.path.islink(x_folder)
        assert os.path.islink(os.path.join(x_folder, "package.json"))
        assert os.path.islink(os.path.join(x_folder, "node_modules", "left-pad"))
        assert os.path.islink(os.path.join(a.folder, "node_modules", "left-pad"))

    def test_missing_dependency_is_fatal(self, tmp_path):
        config = make_config(tmp_path)
        a = make_project(tmp_path, "a", dependencies={"ghost": "^1.0.0"})
        self._install(config.temp_folder, {"ghost": "^1.0.0"}, {})
        with pytest.raises(MonolinkError, match="ghost"):
            LinkManager(config, [a]).create_symlinks_for_projects()

    def test_missing_optional_dependency_is_skipped(self, tmp_path):
        config = make_config(tmp_path)
        a = make_project(tmp_path, "a")
        self._install(config.temp_folder, {}, {})
        write_package(
            os.path.join(config.temp_folder, "node_modules", "@monolink-temp", "a"),
            "@monolink-temp/a",
            "0.0.0",
            optionalDependencies={"fsevents": "^2.0.0"},
        )
        LinkManager(config, [a]).create_symlinks_for_projects()
        assert os.listdir(os.path.join(a.folder, "node_modules")) == []

    def test_link_flag_skips_second_run(self, tmp_path):
        config = make_config(tmp_path)
        a = make_project(tmp_path, "a")
        self._install(config.temp_folder, {}, {})
        manager = LinkManager(config, [a])
        assert manager.create_symlinks_for_projects() is True
        assert os.path.exists(manager.last_link_flag_path)
        assert manager.create_symlinks_for_projects() is False
        assert manager.create_symlinks_for_projects(force=True) is True

    def test_uninstalled_temp_project(self, tmp_path):
        config = make_config(tmp_path)
        a = make_project(tmp_path, "a")
        write_package(config.temp_folder, "monolink-common", "0.0.0")
        with pytest.raises(MonolinkError, match="monolink install"):
            LinkManager(config, [a]).create_symlinks_for_projects()


class TestPnpmLinking:
    """Tree installs produced by pnpm, where packages live in a virtual store."""

    def test_dependencies_link_into_the_store(self, tmp_path):
        config = make_config(tmp_path, PackageManagers.PNPM)
        a = make_project(tmp_path, "a", dependencies={"left-pad": "^1.0.0"})
        temp = config.temp_folder
        store_modules = os.path.join(temp, "node_modules", ".pnpm", "file+projects+a.tgz", "node_modules")
        write_package(
            os.path.join(store_modules, "@monolink-temp", "a"),
            "@monolink-temp/a",
            "0.0.0",
            dependencies={"left-pad": "^1.0.0"},
        )
        pad_real = os.path.join(temp, "node_modules", ".pnpm", "left-pad@1.3.0", "node_modules", "left-pad")
        write_package(pad_real, "left-pad", "1.3.0")
        os.symlink(pad_real, os.path.join(store_modules, "left-pad"))
        os.makedirs(os.path.join(temp, "node_modules", "@monolink-temp"))
        os.symlink(
            os.path.join(store_modules, "@monolink-temp", "a"),
            os.path.join(temp, "node_modules", "@monolink-temp", "a"),
        )

        manager = LinkManager(config, [a])
        root = manager.build_pnpm_project_tree(a)
        assert [(child.name, child.version) for child in root.children] == [("left-pad", "1.3.0")]

        manager.create_symlinks_for_projects()
        assert os.path.realpath(os.path.join(a.folder, "node_modules", "left-pad")) == os.path.realpath(pad_real)
