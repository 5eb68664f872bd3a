"""Tests for generating the temp folder and validating the lockfile against it."""

import io
import json
import os
import tarfile

import pytest
import yaml

from monolink.config import RepoConfiguration
from monolink.constants import PackageManagers
from monolink.errors import MonolinkError
from monolink.install.temp_workspace import (
    PnpmWorkspaceTempWorkspace,
    TempWorkspace,
    TreeTempWorkspace,
    create_deterministic_tarball,
    create_temp_workspace,
)
from monolink.project import load_project
from monolink.shrinkwrap.npm import NpmShrinkwrapFile
from monolink.shrinkwrap.pnpm import PnpmShrinkwrapFile
from monolink.version_reconciler import PreferredVersionTable


def write_manifest(folder, name, version="1.0.0", **sections):
    os.makedirs(folder, exist_ok=True)
    data = {"name": name, "version": version}
    data.update(sections)
    with open(os.path.join(folder, "package.json"), "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2)
    return load_project(folder)


def make_config(root, package_manager=PackageManagers.NPM, use_workspaces=False):
    return RepoConfiguration(
        repo_root=str(root),
        package_manager=package_manager,
        package_manager_version="8.0.0",
        use_workspaces=use_workspaces,
        global_folder=str(root / "global"),
    )


def npm_shrinkwrap(**extra_dependencies):
    dependencies = {
        "@monolink-temp/app": {"version": "file:projects/app.tgz", "dependencies": {}},
        "@monolink-temp/lib": {"version": "file:projects/lib.tgz"},
        "q": {"version": "1.5.3"},
    }
    dependencies.update(extra_dependencies)
    return NpmShrinkwrapFile({"name": "monolink-common", "dependencies": dependencies})


class TestTreeTempWorkspace:
    """Tarball-per-project layout."""

    def _projects(self, root):
        lib = write_manifest(str(root / "lib"), "lib", "1.0.0")
        app = write_manifest(
            str(root / "app"),
            "app",
            dependencies={"q": "1.5.3", "lib": "^1.0.0"},
            optionalDependencies={"fsevents": "^2.0.0"},
        )
        return [app, lib]

    def test_factory_picks_layout(self, tmp_path):
        assert isinstance(create_temp_workspace(make_config(tmp_path)), TreeTempWorkspace)
        workspace_config = make_config(tmp_path, PackageManagers.PNPM, use_workspaces=True)
        assert isinstance(create_temp_workspace(workspace_config), PnpmWorkspaceTempWorkspace)

    def test_no_lockfile_is_stale(self, tmp_path):
        config = make_config(tmp_path)
        workspace = TreeTempWorkspace(config)
        result = workspace.prepare(None, PreferredVersionTable({"q": "1.5.3"}), self._projects(tmp_path), True)
        assert not result.shrinkwrap_is_up_to_date
        with open(workspace.common_package_json_path, encoding="utf-8") as fh:
            common = json.load(fh)
        assert common["dependencies"] == {
            "@monolink-temp/app": "file:./projects/app.tgz",
            "@monolink-temp/lib": "file:./projects/lib.tgz",
            "q": "1.5.3",
        }

    def test_temp_manifest_lists_local_links_separately(self, tmp_path):
        config = make_config(tmp_path)
        workspace = TreeTempWorkspace(config)
        projects = self._projects(tmp_path)
        workspace.prepare(None, PreferredVersionTable(), projects, True)
        with tarfile.open(workspace.tarball_path(projects[0]), "r:gz") as archive:
            manifest = json.load(io.TextIOWrapper(archive.extractfile("package/package.json"), encoding="utf-8"))
        assert manifest["name"] == "@monolink-temp/app"
        assert manifest["dependencies"] == {"q": "1.5.3"}
        assert manifest["monolinkDependencies"] == {"lib": "^1.0.0"}
        assert manifest["optionalDependencies"] == {"fsevents": "^2.0.0"}

    def test_satisfying_lockfile_is_current(self, tmp_path):
        config = make_config(tmp_path)
        shrinkwrap = npm_shrinkwrap(fsevents={"version": "2.3.3"})
        result = TreeTempWorkspace(config).prepare(
            shrinkwrap, PreferredVersionTable({"q": "1.5.3"}), self._projects(tmp_path), False
        )
        assert result.shrinkwrap_is_up_to_date, result.warnings

    def test_unsatisfied_request_is_stale(self, tmp_path):
        config = make_config(tmp_path)
        shrinkwrap = npm_shrinkwrap(q={"version": "1.4.0"}, fsevents={"version": "2.3.3"})
        result = TreeTempWorkspace(config).prepare(shrinkwrap, PreferredVersionTable(), self._projects(tmp_path), False)
        assert not result.shrinkwrap_is_up_to_date
        assert any("q@1.5.3" in warning for warning in result.warnings)

    def test_orphaned_temp_project_is_stale(self, tmp_path):
        config = make_config(tmp_path)
        shrinkwrap = npm_shrinkwrap(
            fsevents={"version": "2.3.3"}, **{"@monolink-temp/gone": {"version": "file:projects/gone.tgz"}}
        )
        result = TreeTempWorkspace(config).prepare(shrinkwrap, PreferredVersionTable(), self._projects(tmp_path), False)
        assert not result.shrinkwrap_is_up_to_date
        assert any("@monolink-temp/gone" in warning for warning in result.warnings)

    def test_second_prepare_leaves_files_alone(self, tmp_path):
        config = make_config(tmp_path)
        workspace = TreeTempWorkspace(config)
        projects = self._projects(tmp_path)
        workspace.prepare(None, PreferredVersionTable(), projects, True)
        inputs = [path for path in workspace.input_files(projects) if os.path.exists(path)]
        before = {path: os.stat(path).st_mtime_ns for path in inputs}
        workspace.prepare(None, PreferredVersionTable(), projects, True)
        assert {path: os.stat(path).st_mtime_ns for path in inputs} == before

    def test_stale_tarballs_are_removed(self, tmp_path):
        config = make_config(tmp_path)
        workspace = TreeTempWorkspace(config)
        os.makedirs(workspace.projects_folder)
        stale = os.path.join(workspace.projects_folder, "removed.tgz")
        with open(stale, "wb") as fh:
            fh.write(b"")
        workspace.prepare(None, PreferredVersionTable(), self._projects(tmp_path), True)
        assert not os.path.exists(stale)


def test_layout_base_cannot_be_instantiated(tmp_path):
    with pytest.raises(TypeError):
        TempWorkspace(make_config(tmp_path))


def test_deterministic_tarball():
    first = create_deterministic_tarball({"name": "x", "version": "0.0.0"})
    assert first == create_deterministic_tarball({"name": "x", "version": "0.0.0"})
    assert first != create_deterministic_tarball({"name": "x", "version": "0.0.1"})


class TestPnpmWorkspaceTempWorkspace:
    """pnpm-workspace.yaml layout."""

    def _config(self, root):
        return make_config(root, PackageManagers.PNPM, use_workspaces=True)

    def test_local_references_are_rewritten_when_updating(self, tmp_path):
        config = self._config(tmp_path)
        lib = write_manifest(str(tmp_path / "libs" / "lib"), "lib", "1.2.0")
        app = write_manifest(str(tmp_path / "apps" / "app"), "app", dependencies={"lib": "^1.0.0"})
        workspace = PnpmWorkspaceTempWorkspace(config)

        result = workspace.prepare(None, PreferredVersionTable(), [app, lib], True)

        assert not result.shrinkwrap_is_up_to_date
        with open(app.manifest_path, encoding="utf-8") as fh:
            assert json.load(fh)["dependencies"]["lib"] == "workspace:*"
        assert result.projects[0].get_dependency("lib").version == "workspace:*"
        with open(workspace.workspace_file_path, encoding="utf-8") as fh:
            assert yaml.safe_load(fh)["packages"] == ["../../apps/app", "../../libs/lib"]

    def test_rewrite_without_update_permission_is_fatal(self, tmp_path):
        config = self._config(tmp_path)
        lib = write_manifest(str(tmp_path / "libs" / "lib"), "lib", "1.2.0")
        app = write_manifest(str(tmp_path / "apps" / "app"), "app", dependencies={"lib": "^1.0.0"})
        with pytest.raises(MonolinkError, match="monolink update"):
            PnpmWorkspaceTempWorkspace(config).prepare(None, PreferredVersionTable(), [app, lib], False)

    def test_unsatisfied_local_version_is_fatal(self, tmp_path):
        config = self._config(tmp_path)
        lib = write_manifest(str(tmp_path / "libs" / "lib"), "lib", "1.2.0")
        app = write_manifest(str(tmp_path / "apps" / "app"), "app", dependencies={"lib": "^2.0.0"})
        with pytest.raises(MonolinkError, match="cyclicDependencyProjects"):
            PnpmWorkspaceTempWorkspace(config).prepare(None, PreferredVersionTable(), [app, lib], True)

    def test_matching_importers_are_current(self, tmp_path):
        config = self._config(tmp_path)
        lib = write_manifest(str(tmp_path / "libs" / "lib"), "lib", "1.2.0")
        app = write_manifest(
            str(tmp_path / "apps" / "app"),
            "app",
            dependencies={"lib": "workspace:*", "left-pad": "^1.0.0"},
        )
        shrinkwrap = PnpmShrinkwrapFile(
            {
                "importers": {
                    ".": {"specifiers": {"left-pad": "^1.0.0"}, "dependencies": {"left-pad": "1.3.0"}},
                    "../../apps/app": {
                        "specifiers": {"left-pad": "^1.0.0", "lib": "workspace:*"},
                        "dependencies": {"left-pad": "1.3.0", "lib": "link:../../libs/lib"},
                    },
                    "../../libs/lib": {"specifiers": {}},
                },
                "packages": {"/left-pad/1.3.0": {"resolution": {"integrity": "sha512-x"}}},
            }
        )
        result = PnpmWorkspaceTempWorkspace(config).prepare(
            shrinkwrap, PreferredVersionTable({"left-pad": "^1.0.0"}), [app, lib], False
        )
        assert result.shrinkwrap_is_up_to_date, result.warnings

    def test_tree_lockfile_is_stale_for_workspaces(self, tmp_path):
        config = self._config(tmp_path)
        app = write_manifest(str(tmp_path / "apps" / "app"), "app")
        shrinkwrap = PnpmShrinkwrapFile({"dependencies": {"@monolink-temp/app": "file:projects/app.tgz"}})
        result = PnpmWorkspaceTempWorkspace(config).prepare(shrinkwrap, PreferredVersionTable(), [app], True)
        assert not result.shrinkwrap_is_up_to_date
