"""Tests for preferred versions and mismatch detection."""

import json

import pytest

from monolink.config import CommonVersions
from monolink.errors import AmbiguousPreference
from monolink.project import DependencyType, Project, ProjectDependency
from monolink.version_reconciler import (
    COMMON_VERSIONS_CONSUMER,
    PreferredVersionTable,
    VersionMismatchReport,
    find_mismatches,
    get_all_preferred_versions,
)


def make_project(name, version="1.0.0", cyclic=(), **sections):
    dependencies = []
    for dependency_type in DependencyType:
        for dep_name, dep_version in sections.get(dependency_type.name.lower(), {}).items():
            dependencies.append(ProjectDependency(dep_name, dep_version, dependency_type))
    return Project(
        name=name,
        version=version,
        folder=f"/repo/{name}",
        dependencies=tuple(dependencies),
        cyclic_dependency_projects=frozenset(cyclic),
    )


class TestFindMismatches:
    """Detecting dependencies requested with different specifiers."""

    def test_two_projects_disagree(self):
        projects = [
            make_project("A", regular={"karma": "0.0.1"}),
            make_project("B", regular={"karma": "0.0.2"}),
        ]
        mismatches = find_mismatches(projects, CommonVersions())
        assert len(mismatches) == 1
        assert mismatches[0].dependency_name == "karma"
        assert mismatches[0].versions == ["0.0.1", "0.0.2"]
        assert mismatches[0].consumers == {"0.0.1": ["A"], "0.0.2": ["B"]}

    def test_consumer_listed_once_per_version(self):
        projects = [
            make_project("A", regular={"karma": "0.0.1"}, dev={"karma": "0.0.1"}),
            make_project("B", regular={"karma": "0.0.2"}),
        ]
        mismatches = find_mismatches(projects, CommonVersions())
        assert mismatches[0].consumers == {"0.0.1": ["A"], "0.0.2": ["B"]}

    def test_agreement_is_not_reported(self):
        projects = [
            make_project("A", regular={"karma": "0.0.1"}),
            make_project("B", dev={"karma": "0.0.1"}),
        ]
        assert find_mismatches(projects, CommonVersions()) == []

    def test_peer_dependencies_are_ignored(self):
        projects = [
            make_project("A", regular={"react": "^18.0.0"}),
            make_project("B", peer={"react": "^17.0.0 || ^18.0.0"}),
        ]
        assert find_mismatches(projects, CommonVersions()) == []

    def test_allowed_alternatives_are_ignored(self):
        projects = [
            make_project("A", regular={"typescript": "~5.3.3"}),
            make_project("B", regular={"typescript": "~4.9.5"}),
        ]
        common = CommonVersions(allowed_alternative_versions={"typescript": ["~4.9.5"]})
        assert find_mismatches(projects, common) == []

    def test_local_sibling_satisfied_is_ignored(self):
        projects = [
            make_project("lib", version="1.2.0"),
            make_project("A", regular={"lib": "^1.0.0"}),
            make_project("B", regular={"lib": "~1.2.0"}),
        ]
        assert find_mismatches(projects, CommonVersions()) == []

    def test_cyclic_consumers_are_grouped_separately(self):
        projects = [
            make_project("lib", version="2.0.0", regular={"tool": "1.0.0"}),
            make_project("tool", version="1.5.0", cyclic=("lib",), regular={"lib": "^1.0.0"}),
            make_project("A", regular={"lib": "^1.0.0"}),
            make_project("B", regular={"lib": "^1.1.0"}),
        ]
        names = {mismatch.dependency_name for mismatch in find_mismatches(projects, CommonVersions())}
        assert names == {"lib"}
        cyclic_only = [
            make_project("lib", version="2.0.0"),
            make_project("tool", cyclic=("lib",), regular={"lib": "^1.0.0"}),
            make_project("other", cyclic=("lib",), regular={"lib": "^1.1.0"}),
        ]
        names = {mismatch.dependency_name for mismatch in find_mismatches(cyclic_only, CommonVersions())}
        assert names == {"lib (cyclic)"}

    def test_preferred_versions_are_a_consumer(self):
        projects = [make_project("A", regular={"lodash": "^4.0.0"})]
        common = CommonVersions(preferred_versions={"lodash": "4.17.21"})
        mismatches = find_mismatches(projects, common)
        assert list(mismatches[0].consumers) == ["4.17.21", "^4.0.0"]
        assert mismatches[0].consumers["4.17.21"] == [COMMON_VERSIONS_CONSUMER]
        assert find_mismatches(projects, common, include_preferred_versions=False) == []


class TestPreferredVersions:
    """Implicit and explicit pins."""

    def test_implicit_pins_for_consistent_requests(self):
        projects = [
            make_project("A", regular={"q": "1.5.3", "jquery": "^2.0.0"}),
            make_project("B", regular={"q": "1.5.3", "jquery": "^3.0.0"}),
        ]
        table = get_all_preferred_versions(projects, CommonVersions())
        assert table.get("q") == "1.5.3"
        assert "jquery" not in table

    def test_explicit_overrides_implicit(self):
        projects = [make_project("A", regular={"q": "1.5.3"})]
        table = get_all_preferred_versions(projects, CommonVersions(preferred_versions={"q": "~1.5.0"}))
        assert table.get("q") == "~1.5.0"
        assert table.is_explicit("q")

    def test_implicit_can_be_disabled(self):
        projects = [make_project("A", regular={"q": "1.5.3"})]
        table = get_all_preferred_versions(projects, CommonVersions(implicitly_preferred_versions=False))
        assert len(table) == 0

    def test_both_explicit_tables_is_ambiguous(self):
        common = CommonVersions(preferred_versions={"q": "1"}, xstitch_preferred_versions={"q": "2"})
        with pytest.raises(AmbiguousPreference):
            get_all_preferred_versions([], common)

    def test_items_are_sorted(self):
        table = PreferredVersionTable({"b": "1", "a": "2"}, {"c": "3"})
        assert [name for name, _ in table.items()] == ["a", "b", "c"]


class TestVersionMismatchReport:
    """Rendering."""

    def _report(self, consumers=7):
        projects = [make_project("A", regular={"karma": "0.0.1"})]
        projects += [make_project(f"P{i}", regular={"karma": "0.0.2"}) for i in range(consumers)]
        return VersionMismatchReport(find_mismatches(projects, CommonVersions()))

    def test_json_shape(self):
        data = json.loads(self._report().render_json())
        entry = data["mismatchedVersions"][0]
        assert entry["dependencyName"] == "karma"
        assert entry["versions"][0] == {"version": "0.0.1", "projects": ["A"]}

    def test_truncated_text(self):
        text = self._report().render_text(truncate=True)
        assert "   - P4" in text
        assert "   - P5" not in text
        assert "   (and 2 others)" in text

    def test_full_text(self):
        text = self._report().render_text()
        assert "   - P6" in text
        assert "others" not in text
