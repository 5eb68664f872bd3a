import json

import pytest

from monolink.errors import ConfigurationError
from monolink.project import (
    DependencyType,
    Project,
    assign_temp_project_names,
    load_project,
    make_temp_project_name,
)


def write_manifest(folder, manifest):
    folder.mkdir(parents=True, exist_ok=True)
    (folder / "package.json").write_text(json.dumps(manifest), encoding="utf-8")


class TestLoadProject:
    def test_reads_sections_in_manifest_order(self, tmp_path):
        write_manifest(
            tmp_path,
            {
                "name": "@acme/app",
                "version": "2.0.0",
                "devDependencies": {"jest": "^29.0.0"},
                "dependencies": {"q": "1.5.3"},
                "peerDependencies": {"react": "^18.0.0"},
            },
        )
        project = load_project(str(tmp_path), ["@acme/lib"])
        assert project.name == "@acme/app"
        assert project.version == "2.0.0"
        assert [d.name for d in project.dependencies] == ["q", "react", "jest"]
        assert project.get_dependency("react").dependency_type == DependencyType.PEER
        assert project.is_cyclic_dependency("@acme/lib")
        assert project.temp_project_name == "@monolink-temp/app"
        assert project.unscoped_temp_name == "app"

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_project(str(tmp_path / "nope"))

    def test_unparsable_manifest(self, tmp_path):
        (tmp_path / "package.json").write_text("{", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Unable to read"):
            load_project(str(tmp_path))

    def test_missing_name(self, tmp_path):
        write_manifest(tmp_path, {"version": "1.0.0"})
        with pytest.raises(ConfigurationError, match="name"):
            load_project(str(tmp_path))

    def test_unexpected_name(self, tmp_path):
        write_manifest(tmp_path, {"name": "app"})
        with pytest.raises(ConfigurationError, match="expects"):
            load_project(str(tmp_path), expected_name="web")

    def test_section_must_be_an_object(self, tmp_path):
        write_manifest(tmp_path, {"name": "app", "dependencies": ["q"]})
        with pytest.raises(ConfigurationError):
            load_project(str(tmp_path))

    def test_version_defaults_to_placeholder(self, tmp_path):
        write_manifest(tmp_path, {"name": "app"})
        assert load_project(str(tmp_path)).version == "0.0.0"


def test_temp_project_names_are_unique():
    names = assign_temp_project_names(["@a/app", "@b/app", "@c/app", "lib"])
    assert names == {
        "@a/app": "@monolink-temp/app",
        "@b/app": "@monolink-temp/app-2",
        "@c/app": "@monolink-temp/app-3",
        "lib": "@monolink-temp/lib",
    }


def test_make_temp_project_name():
    assert make_temp_project_name("@acme/web-app") == "@monolink-temp/web-app"
    assert make_temp_project_name("web-app", 2) == "@monolink-temp/web-app-2"


def test_explicit_temp_name_is_kept():
    project = Project("app", "1.0.0", "/repo/app", temp_project_name="@monolink-temp/app-2")
    assert project.temp_project_name == "@monolink-temp/app-2"
    assert project.unscoped_temp_name == "app-2"
