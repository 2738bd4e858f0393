"""Tests for andon.yaml loading and run overrides."""

import pytest

from andon.config import (
    AndonConfig,
    ConfigError,
    RunOptions,
    apply_overrides,
    get_config,
    load_config,
)


def write_config(tmp_path, text):
    path = tmp_path / "andon.yaml"
    path.write_text(text)
    return path


class TestLoadConfig:

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "andon.yaml"))

    def test_empty_file_gives_defaults(self, tmp_path):
        path = write_config(tmp_path, "")
        config = load_config(str(path))
        assert config.retry.max_attempts == 3
        assert config.retry.on_exhaustion == "skip"
        assert config.pipeline.aggression == "high"
        assert config.pipeline.fan_out_threshold == 15
        assert config.verification.infrastructure_exit_codes == [126, 127]
        assert config.repo_root == str(tmp_path.absolute())

    def test_sections_are_parsed(self, tmp_path):
        path = write_config(tmp_path, """
retry:
  max_attempts: 5
  on_exhaustion: escalate
verification:
  command: pytest -x -q
git:
  base_branch: develop
pipeline:
  aggression: low
  escalate_severities: [Critical, HIGH]
tracker:
  source: github
  repo: acme/widgets
""")
        config = load_config(str(path))
        assert config.retry.max_attempts == 5
        assert config.retry.on_exhaustion == "escalate"
        assert config.verification.command == "pytest -x -q"
        assert config.git.base_branch == "develop"
        assert config.pipeline.aggression == "low"
        assert config.pipeline.escalate_severities == ["critical", "high"]
        assert config.tracker.source == "github"
        assert config.tracker.repo == "acme/widgets"

    def test_env_vars_are_substituted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANDON_VERIFY", "make check")
        path = write_config(tmp_path, "verification:\n  command: ${ANDON_VERIFY}\n")
        assert load_config(str(path)).verification.command == "make check"

    def test_unset_env_var_raises(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ANDON_UNSET_VAR", raising=False)
        path = write_config(tmp_path, "verification:\n  command: ${ANDON_UNSET_VAR}\n")
        with pytest.raises(ConfigError, match="ANDON_UNSET_VAR"):
            load_config(str(path))

    def test_invalid_yaml_raises(self, tmp_path):
        path = write_config(tmp_path, "retry: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(path))

    def test_non_mapping_raises(self, tmp_path):
        path = write_config(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))

    @pytest.mark.parametrize("text", [
        "retry:\n  max_attempts: 0\n",
        "retry:\n  on_exhaustion: retry-forever\n",
        "pipeline:\n  aggression: reckless\n",
        "tracker:\n  source: jira\n",
    ])
    def test_invalid_choices_raise(self, tmp_path, text):
        path = write_config(tmp_path, text)
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_get_config_caches(self, tmp_path):
        path = write_config(tmp_path, "retry:\n  max_attempts: 2\n")
        first = get_config(str(path))
        path.write_text("retry:\n  max_attempts: 4\n")
        assert get_config(str(path)) is first
        assert get_config(str(path), force_reload=True).retry.max_attempts == 4


class TestPaths:

    def test_state_paths_live_under_state_dir(self, tmp_path):
        config = AndonConfig(repo_root=str(tmp_path))
        assert config.state_path == tmp_path / ".andon"
        assert config.logs_path == tmp_path / ".andon" / "logs"
        assert config.progress_path == tmp_path / ".andon" / "progress.json"
        assert config.journal_path == tmp_path / ".andon" / "progress.txt"
        assert config.skills_path == tmp_path / ".claude" / "skills"


class TestApplyOverrides:

    def test_none_keeps_configured_values(self, config):
        result = apply_overrides(config, RunOptions())
        assert result.retry.max_attempts == config.retry.max_attempts
        assert result.verification.command == config.verification.command

    def test_overrides_are_applied_to_a_copy(self, config):
        result = apply_overrides(config, RunOptions(
            aggression="maximum",
            verify_command="pytest",
            max_attempts=1,
            retry_skipped=True,
        ))
        assert result.pipeline.aggression == "maximum"
        assert result.verification.command == "pytest"
        assert result.retry.max_attempts == 1
        assert result.pipeline.retry_skipped is True
        # Original untouched
        assert config.pipeline.aggression == "high"
        assert config.retry.max_attempts == 3

    def test_invalid_override_raises(self, config):
        with pytest.raises(ConfigError):
            apply_overrides(config, RunOptions(aggression="extreme"))
        with pytest.raises(ConfigError):
            apply_overrides(config, RunOptions(max_attempts=0))
