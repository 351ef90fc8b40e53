"""Tests for rule resolution into operations."""

from __future__ import annotations

from pathlib import Path

import pytest

from secrets_manager.errors import ConfigError
from secrets_manager.models import Direction, Rule, SecretsConfig
from secrets_manager.resolver import resolve, substitute_profile


def _config(exports=None, imports=None) -> SecretsConfig:
    return SecretsConfig.model_validate({"exports": exports or {}, "imports": imports or {}})


class TestSubstituteProfile:
    def test_every_occurrence(self) -> None:
        assert substitute_profile("$profile/x/$profile", "m1") == "m1/x/m1"

    def test_no_token(self) -> None:
        assert substitute_profile("plain", "m1") == "plain"


class TestResolveExport:
    """Tests for export resolution."""

    def test_scenario(self) -> None:
        """The machine1 example yields exactly the documented endpoint."""
        config = _config(exports={"machine1": [
            {"source": "/home/something", "endpoint": "$profile/something", "files": ["secret1"]},
        ]})
        ops = resolve(config, "machine1", Direction.EXPORT)
        assert len(ops) == 1
        assert ops[0].action == Direction.EXPORT
        assert ops[0].source_path == Path("/home/something/secret1")
        assert ops[0].endpoint_path == Path("machine1/something/secret1.age")
        assert ops[0].rel_path == "machine1/something/secret1.age"

    def test_shared_first_then_profile(self) -> None:
        config = _config(exports={
            "machine1": [{"source": "/p", "endpoint": "p", "files": ["b"]}],
            "shared": [{"source": "/s", "endpoint": "s", "files": ["a"]}],
        })
        ops = resolve(config, "machine1", Direction.EXPORT)
        assert [op.rel_path for op in ops] == ["s/a.age", "p/b.age"]

    def test_file_order_preserved(self) -> None:
        config = _config(exports={"shared": [
            {"source": "/s", "endpoint": "s", "files": ["z", "a", "m"]},
        ]})
        assert [op.source_path.name for op in resolve(config, "x", Direction.EXPORT)] == ["z", "a", "m"]

    def test_other_profiles_ignored(self) -> None:
        config = _config(exports={"machine2": [{"source": "/p", "endpoint": "p", "files": ["b"]}]})
        assert resolve(config, "machine1", Direction.EXPORT) == []

    def test_substitution_in_source(self) -> None:
        config = _config(exports={"shared": [
            {"source": "/srv/$profile", "endpoint": "$profile", "files": ["k"]},
        ]})
        op = resolve(config, "m1", Direction.EXPORT)[0]
        assert op.source_path == Path("/srv/m1/k")
        assert op.endpoint_path == Path("m1/k.age")

    def test_tilde_expanded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "/home/tester")
        config = _config(exports={"shared": [{"source": "~/.ssh", "endpoint": "ssh", "files": ["id"]}]})
        assert resolve(config, "m1", Direction.EXPORT)[0].source_path == Path("/home/tester/.ssh/id")

    @pytest.mark.parametrize("rule", [
        {"source": "relative", "endpoint": "e", "files": ["f"]},
        {"source": "/s", "endpoint": "/abs", "files": ["f"]},
        {"source": "/s", "endpoint": "a/../b", "files": ["f"]},
        {"source": "/s", "endpoint": "a//b", "files": ["f"]},
        {"source": "/s", "endpoint": "e", "files": ["../f"]},
        {"source": "/s", "endpoint": "e", "files": ["f", "f"]},
        {"source": "/s", "endpoint": "e", "files": ["f"], "symlinks_to": "/l"},
        {"source": "/s", "endpoint": "e", "files": ["a\nb", "ok"]},
        {"source": "/s", "endpoint": "e", "files": ["tab\there"]},
        {"source": "/s", "endpoint": "d\r", "files": ["f"]},
        {"source": "/s\n", "endpoint": "e", "files": ["f"]},
    ])
    def test_invalid_rules(self, rule: dict) -> None:
        with pytest.raises(ConfigError):
            resolve(_config(exports={"shared": [rule]}), "m1", Direction.EXPORT)

    def test_duplicate_destination_across_profiles(self) -> None:
        config = _config(exports={
            "shared": [{"source": "/a", "endpoint": "e", "files": ["f"]}],
            "m1": [{"source": "/b", "endpoint": "e", "files": ["f"]}],
        })
        with pytest.raises(ConfigError, match="both"):
            resolve(config, "m1", Direction.EXPORT)

    @pytest.mark.parametrize("profile", ["", "a/b"])
    def test_invalid_profile(self, profile: str) -> None:
        with pytest.raises(ConfigError):
            resolve(_config(), profile, Direction.EXPORT)


class TestResolveImport:
    """Tests for import resolution."""

    def test_paths_and_symlinks(self) -> None:
        config = _config(imports={"m1": [{
            "source": "$profile/ssh",
            "endpoint": "/home/u/.ssh",
            "files": ["id", "id.pub"],
            "symlinks_to": "/root/.ssh",
        }]})
        ops = resolve(config, "m1", Direction.IMPORT)
        assert [op.source_path for op in ops] == [Path("m1/ssh/id.age"), Path("m1/ssh/id.pub.age")]
        assert [op.endpoint_path for op in ops] == [Path("/home/u/.ssh/id"), Path("/home/u/.ssh/id.pub")]
        assert [op.symlink_target for op in ops] == [Path("/root/.ssh/id"), Path("/root/.ssh/id.pub")]
        assert ops[0].rel_path == "m1/ssh/id.age"
        assert ops[0].local_path == Path("/home/u/.ssh/id")

    def test_no_symlinks(self) -> None:
        config = _config(imports={"shared": [{"source": "s", "endpoint": "/e", "files": ["f"]}]})
        assert resolve(config, "m1", Direction.IMPORT)[0].symlink_target is None

    def test_relative_symlink_dir_rejected(self) -> None:
        config = _config(imports={"shared": [
            {"source": "s", "endpoint": "/e", "files": ["f"], "symlinks_to": "links"},
        ]})
        with pytest.raises(ConfigError):
            resolve(config, "m1", Direction.IMPORT)

    def test_direction_selects_table(self) -> None:
        config = _config(
            exports={"shared": [{"source": "/a", "endpoint": "e", "files": ["f"]}]},
            imports={},
        )
        assert resolve(config, "m1", Direction.IMPORT) == []


class TestRuleModel:
    def test_files_required(self) -> None:
        with pytest.raises(ValueError):
            Rule(source="/a", endpoint="b", files=[])
