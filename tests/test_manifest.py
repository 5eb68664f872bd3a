import json

import pytest

from monolink.manifest import (
    SetDependencyVersion,
    apply_dependency_changes,
    save_if_modified,
    serialize_manifest,
)
from monolink.project import DependencyType, load_project


@pytest.fixture
def project(tmp_path):
    manifest = {
        "name": "app",
        "version": "1.0.0",
        "dependencies": {"lib": "^1.0.0", "q": "1.5.3"},
        "devDependencies": {"lib": "^1.0.0"},
    }
    (tmp_path / "package.json").write_text(json.dumps(manifest), encoding="utf-8")
    return load_project(str(tmp_path))


def test_change_updates_every_section(project):
    update = apply_dependency_changes(project, [SetDependencyVersion("app", "lib", "workspace:*")])
    assert update.modified
    assert update.project.manifest["dependencies"]["lib"] == "workspace:*"
    assert update.project.manifest["devDependencies"]["lib"] == "workspace:*"
    assert update.project.get_dependency("lib", DependencyType.DEV).version == "workspace:*"
    # The original view is left alone.
    assert project.manifest["dependencies"]["lib"] == "^1.0.0"


def test_change_limited_to_one_section(project):
    change = SetDependencyVersion("app", "lib", "workspace:*", DependencyType.DEV)
    update = apply_dependency_changes(project, [change])
    assert update.project.manifest["dependencies"]["lib"] == "^1.0.0"
    assert update.project.manifest["devDependencies"]["lib"] == "workspace:*"


def test_same_version_is_not_a_modification(project):
    update = apply_dependency_changes(project, [SetDependencyVersion("app", "q", "1.5.3")])
    assert not update.modified
    assert update.project is project


def test_changes_for_other_projects_are_ignored(project):
    update = apply_dependency_changes(project, [SetDependencyVersion("other", "missing", "1.0.0")])
    assert not update.modified


def test_unknown_dependency_raises(project):
    with pytest.raises(KeyError):
        apply_dependency_changes(project, [SetDependencyVersion("app", "missing", "1.0.0")])


def test_save_if_modified(project):
    update = apply_dependency_changes(project, [SetDependencyVersion("app", "q", "^1.5.3")])
    assert save_if_modified(update) is True
    with open(project.manifest_path, encoding="utf-8") as fh:
        text = fh.read()
    assert text == serialize_manifest(dict(update.project.manifest))
    assert json.loads(text)["dependencies"]["q"] == "^1.5.3"
    assert save_if_modified(update) is False
