"""Tests for dependency specifier classification."""

import pytest

from monolink.errors import MalformedSpecifier
from monolink.specifier import DependencySpecifier, DependencySpecifierType, parse_specifier


class TestDependencySpecifier:
    """Classifying the specifiers found in package.json files."""

    @pytest.mark.parametrize(
        "spec,expected",
        [
            ("1.2.3", DependencySpecifierType.VERSION),
            ("^1.2.3", DependencySpecifierType.RANGE),
            (">=1.0.0 <2.0.0", DependencySpecifierType.RANGE),
            ("latest", DependencySpecifierType.TAG),
            ("file:../lib.tgz", DependencySpecifierType.FILE),
            ("../lib", DependencySpecifierType.DIRECTORY),
            ("github:acme/widget", DependencySpecifierType.GIT),
            ("acme/widget#main", DependencySpecifierType.GIT),
            ("git+ssh://git@github.com/acme/widget.git", DependencySpecifierType.GIT),
            ("https://example.com/widget-1.0.0.tgz", DependencySpecifierType.REMOTE),
        ],
    )
    def test_classification(self, spec, expected):
        assert parse_specifier("widget", spec).specifier_type == expected

    def test_alias_has_a_target(self):
        spec = DependencySpecifier.parse("pad", "npm:left-pad@^1.0.0")
        assert spec.specifier_type == DependencySpecifierType.ALIAS
        assert spec.alias_target.package_name == "left-pad"
        assert spec.alias_target.specifier_type == DependencySpecifierType.RANGE

    def test_scoped_alias_target(self):
        spec = DependencySpecifier.parse("b", "npm:@acme/base@1.0.0")
        assert spec.alias_target.package_name == "@acme/base"
        assert spec.alias_target.version_specifier == "1.0.0"

    def test_workspace_prefix_is_stripped(self):
        spec = DependencySpecifier.parse("lib", "workspace: ^1.0.0")
        assert spec.specifier_type == DependencySpecifierType.WORKSPACE
        assert spec.version_specifier == "^1.0.0"

    def test_alias_to_a_path_is_rejected(self):
        with pytest.raises(MalformedSpecifier):
            DependencySpecifier.parse("x", "npm:y@file:../y")

    def test_garbage_is_rejected(self):
        with pytest.raises(MalformedSpecifier) as info:
            DependencySpecifier.parse("x", "not a version!")
        assert info.value.package_name == "x"

    def test_str(self):
        assert str(parse_specifier("react", "^18.0.0")) == "react@^18.0.0"
