"""Tests for hierarchical configuration loading."""

from pathlib import Path

import pytest

from stackwright.errors import ConfigNotFoundError, ConfigParseError
from stackwright.hierarchy import (
    ConfigFragment,
    Level,
    load_fragment_file,
    load_hierarchy,
    merge_fragments,
    resolve_from_mapping,
)


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def live_tree(tmp_path: Path) -> Path:
    """Hierarchy root -> account -> region -> environment, returning the env dir."""
    _write(tmp_path / "live" / "root.yaml", "region: us-east-1\nowner: platform\n")
    account = tmp_path / "live" / "prod-account"
    _write(account / "account.yaml", "account_id: '111111111111'\nenv: prod\n")
    region = account / "us-east-1"
    _write(region / "region.yaml", "az_count: 3\n")
    env_dir = region / "staging"
    _write(env_dir / "env.yaml", "env: staging\nenvironment: staging\n")
    return env_dir


# =============================================================================
# Merging
# =============================================================================


class TestMergeFragments:
    """Tests for root-to-leaf fragment merging."""

    def test_closer_level_overrides_parent(self) -> None:
        """Environment values win over account values for the same key."""
        # Arrange
        fragments = [
            ConfigFragment(Level.ROOT, {"region": "us-east-1"}),
            ConfigFragment(Level.ACCOUNT, {"env": "prod"}),
            ConfigFragment(Level.ENVIRONMENT, {"env": "staging"}),
        ]

        # Act
        merged = merge_fragments(fragments)

        # Assert
        assert merged == {"region": "us-east-1", "env": "staging"}

    def test_order_of_arguments_does_not_matter(self) -> None:
        """Fragments are sorted by level before merging."""
        fragments = [
            ConfigFragment(Level.ENVIRONMENT, {"env": "staging"}),
            ConfigFragment(Level.ACCOUNT, {"env": "prod"}),
        ]

        assert merge_fragments(fragments) == {"env": "staging"}

    def test_nested_mappings_are_replaced_not_merged(self) -> None:
        """Override is shallow: a nested mapping replaces the parent's mapping."""
        fragments = [
            ConfigFragment(Level.ROOT, {"tags": {"team": "core", "cost": "a"}}),
            ConfigFragment(Level.REGION, {"tags": {"team": "edge"}}),
        ]

        assert merge_fragments(fragments) == {"tags": {"team": "edge"}}

    def test_resolve_from_mapping_builds_config(self) -> None:
        """In-memory fragments produce a ResolvedConfig with merged values."""
        config = resolve_from_mapping(
            {"root": {"region": "eu-west-1"}, Level.ACCOUNT: {"account_id": "42"}}
        )

        assert config.values == {"region": "eu-west-1", "account_id": "42"}
        assert config.get("account_id") == "42"
        assert config.get("missing", "fallback") == "fallback"
        assert config.files == []


# =============================================================================
# Discovery
# =============================================================================


class TestLoadHierarchy:
    """Tests for fragment discovery on disk."""

    def test_discovers_every_level(self, live_tree: Path) -> None:
        """Walking up from the environment directory finds all four fragments."""
        # Act
        config = load_hierarchy(live_tree)

        # Assert
        assert config.values == {
            "region": "us-east-1",
            "owner": "platform",
            "account_id": "111111111111",
            "env": "staging",
            "az_count": 3,
            "environment": "staging",
        }
        assert len(config.files) == 4
        assert config.root == live_tree.parents[2].resolve()

    def test_starting_from_stack_file_uses_its_directory(self, live_tree: Path) -> None:
        """A file path is resolved to its parent directory."""
        stack_file = _write(live_tree / "stack.yaml", "name: s\n")

        config = load_hierarchy(stack_file)

        assert config.get("env") == "staging"

    def test_walk_stops_at_first_root_fragment(self, tmp_path: Path, live_tree: Path) -> None:
        """Fragments above the hierarchy root are never read."""
        _write(tmp_path / "account.yaml", "outside: true\n")

        config = load_hierarchy(live_tree)

        assert "outside" not in config.values

    def test_explicit_root_stops_walk(self, live_tree: Path) -> None:
        """An explicit root below the root fragment hides it."""
        account_dir = live_tree.parents[1]

        config = load_hierarchy(live_tree, root=account_dir)

        assert "owner" not in config.values
        assert config.fragments[Level.ROOT].path is None
        assert config.root == account_dir.resolve()

    def test_missing_optional_level_is_empty(self, tmp_path: Path) -> None:
        """A missing region fragment contributes an empty fragment."""
        _write(tmp_path / "root.yaml", "")
        env_dir = tmp_path / "acct" / "env"
        _write(tmp_path / "acct" / "account.yaml", "account_id: '1'\n")
        env_dir.mkdir(parents=True)

        config = load_hierarchy(env_dir)

        assert config.fragments[Level.REGION].values == {}
        assert config.values == {"account_id": "1"}

    def test_missing_required_level_raises(self, tmp_path: Path) -> None:
        """Without an account fragment the default requirement fails."""
        _write(tmp_path / "root.yaml", "region: x\n")
        stack_dir = tmp_path / "stacks"
        stack_dir.mkdir()

        with pytest.raises(ConfigNotFoundError, match="account.yaml"):
            load_hierarchy(stack_dir)

    def test_required_levels_can_be_relaxed(self, tmp_path: Path) -> None:
        """Passing no required levels accepts a bare directory."""
        _write(tmp_path / "root.yaml", "region: x\n")

        config = load_hierarchy(tmp_path, required=())

        assert config.values == {"region": "x"}

    def test_json_fragments_are_supported(self, tmp_path: Path) -> None:
        """JSON fragment files are read like YAML."""
        _write(tmp_path / "root.json", '{"region": "ap-south-1"}')
        _write(tmp_path / "account.json", '{"account_id": "7"}')

        config = load_hierarchy(tmp_path)

        assert config.values == {"region": "ap-south-1", "account_id": "7"}


# =============================================================================
# Fragment files
# =============================================================================


class TestLoadFragmentFile:
    """Tests for single fragment parsing."""

    def test_env_var_substitution(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """${env.NAME} patterns are replaced from the environment."""
        monkeypatch.setenv("ACCOUNT_ID", "123")
        path = _write(
            tmp_path / "account.yaml",
            "account_id: ${env.ACCOUNT_ID}\nname: a-${env.ACCOUNT_ID}\n",
        )

        values = load_fragment_file(path)

        assert values == {"account_id": "123", "name": "a-123"}

    def test_undefined_env_var_raises(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """An undefined variable is a parse error naming the variable."""
        monkeypatch.delenv("STACKWRIGHT_UNDEFINED_VAR", raising=False)
        path = _write(tmp_path / "account.yaml", "x: ${env.STACKWRIGHT_UNDEFINED_VAR}\n")

        with pytest.raises(ConfigParseError, match="STACKWRIGHT_UNDEFINED_VAR"):
            load_fragment_file(path)

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        """Malformed YAML is reported with the file path."""
        path = _write(tmp_path / "account.yaml", "key: [unclosed\n")

        with pytest.raises(ConfigParseError, match="Invalid configuration"):
            load_fragment_file(path)

    def test_non_mapping_root_raises(self, tmp_path: Path) -> None:
        """A list at the top level is rejected."""
        path = _write(tmp_path / "account.yaml", "- a\n- b\n")

        with pytest.raises(ConfigParseError, match="must be a mapping"):
            load_fragment_file(path)

    def test_empty_file_is_empty_mapping(self, tmp_path: Path) -> None:
        """An empty fragment contributes nothing."""
        path = _write(tmp_path / "region.yaml", "")

        assert load_fragment_file(path) == {}
