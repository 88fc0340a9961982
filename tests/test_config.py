"""設定管理モジュールのテスト"""

from pathlib import Path

import pytest

from agent_shogun.core.config import (
    AICLIConfig,
    ConfigError,
    DispatchConfig,
    LoggingConfig,
    ShogunSettings,
    normalize_provider,
    provider_label,
)


class TestShogunSettings:
    """ShogunSettingsのテスト"""

    def test_default_values(self):
        """デフォルト値が正しく設定される"""
        # Arrange & Act
        settings = ShogunSettings()

        # Assert
        assert settings.ai_cli.provider == "claude"
        assert settings.workers.count is None
        assert settings.workers.llm_counts == {}
        assert settings.queue.path == "queue"
        assert settings.dispatch.max_retries == 3
        assert settings.session.pool_session == "multiagent"
        assert settings.logging.level == "INFO"

    def test_from_yaml_with_valid_file(self, tmp_path):
        """有効なYAMLファイルから設定を読み込む"""
        # Arrange
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(
            """
language: ja
ai_cli:
  provider: codex
  codex_binary: /opt/bin/codex
workers:
  count: 4
dispatch:
  max_retries: 5
logging:
  level: debug
""",
            encoding="utf-8",
        )

        # Act
        settings = ShogunSettings.from_yaml(config_file)

        # Assert
        assert settings.ai_cli.provider == "codex"
        assert settings.ai_cli.binary_for("codex") == "/opt/bin/codex"
        assert settings.workers.count == 4
        assert settings.dispatch.max_retries == 5
        assert settings.logging.level == "DEBUG"

    def test_from_yaml_with_nonexistent_file(self):
        """存在しないファイルパスを指定した場合はデフォルト値"""
        # Act
        settings = ShogunSettings.from_yaml(Path("/nonexistent/settings.yaml"))

        # Assert
        assert settings.ai_cli.provider == "claude"

    def test_from_yaml_finds_default_config_file(self, tmp_path, monkeypatch):
        """デフォルトパスの設定ファイルを自動検出する"""
        # Arrange
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "settings.yaml").write_text(
            "ai_cli:\n  provider: gemini\n", encoding="utf-8"
        )
        monkeypatch.chdir(tmp_path)

        # Act
        settings = ShogunSettings.from_yaml(None)

        # Assert
        assert settings.ai_cli.provider == "gemini"

    def test_empty_file_gives_defaults(self, tmp_path):
        """空のファイルはデフォルト値"""
        # Arrange
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("", encoding="utf-8")

        # Act
        settings = ShogunSettings.from_yaml(config_file)

        # Assert
        assert settings.workers.count is None

    def test_empty_sections_are_defaults(self):
        """値のないセクションは未設定扱い"""
        # Act
        settings = ShogunSettings.from_mapping({"ai_cli": None, "workers": None})

        # Assert
        assert settings.ai_cli.provider == "claude"
        assert settings.workers.llm_counts == {}

    def test_invalid_yaml_raises_config_error(self, tmp_path):
        """YAMLとして不正なファイルはConfigError"""
        # Arrange
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("workers: [unclosed\n", encoding="utf-8")

        # Act & Assert
        with pytest.raises(ConfigError):
            ShogunSettings.from_yaml(config_file)

    def test_non_mapping_document_raises_config_error(self):
        """トップレベルがマッピングでなければConfigError"""
        with pytest.raises(ConfigError):
            ShogunSettings.from_mapping(["workers", 3])

    def test_wrong_section_shape_raises_config_error(self):
        """セクションの形が不正ならConfigError"""
        with pytest.raises(ConfigError):
            ShogunSettings.from_mapping({"workers": {"llm_counts": [1, 2]}})

    def test_environment_override(self, monkeypatch):
        """環境変数で設定を上書きできる"""
        # Arrange
        monkeypatch.setenv("SHOGUN_DISPATCH__MAX_RETRIES", "7")

        # Act
        settings = ShogunSettings()

        # Assert
        assert settings.dispatch.max_retries == 7

    def test_get_queue_path_relative_to_root(self, tmp_path):
        """相対パスのキューディレクトリは root 基準"""
        # Arrange
        settings = ShogunSettings.from_mapping({"queue": {"path": "q"}})

        # Act
        path = settings.get_queue_path(tmp_path)

        # Assert
        assert path == (tmp_path / "q").resolve()

    def test_get_queue_path_absolute(self, tmp_path):
        """絶対パスはそのまま"""
        settings = ShogunSettings.from_mapping({"queue": {"path": str(tmp_path / "abs")}})
        assert settings.get_queue_path("/elsewhere") == (tmp_path / "abs").resolve()


class TestAICLIConfig:
    """AICLIConfigのテスト"""

    def test_role_provider_falls_back_to_default(self):
        """ロール別指定がなければ既定プロバイダー"""
        config = AICLIConfig(provider="codex", manager_provider="gemini")

        assert config.provider_for("commander") == "codex"
        assert config.provider_for("manager") == "gemini"
        assert config.provider_for("worker") == "codex"

    def test_blank_provider_uses_claude(self):
        """空のプロバイダーは claude"""
        config = AICLIConfig(provider="", worker_provider="  ")

        assert config.provider == "claude"
        assert config.provider_for("worker") == "claude"

    def test_provider_is_normalized(self):
        """プロバイダー名は小文字化される"""
        config = AICLIConfig(provider=" Codex ")
        assert config.provider_for("worker") == "codex"

    def test_binary_defaults_to_provider_name(self):
        """<provider>_binary が未設定ならプロバイダー名"""
        config = AICLIConfig()
        assert config.binary_for("claude") == "claude"

    def test_role_command(self):
        """<provider>_<role>_cmd を取得"""
        config = AICLIConfig(claude_worker_cmd="claude --dangerously-skip-permissions")

        assert config.role_command("claude", "worker") == "claude --dangerously-skip-permissions"
        assert config.role_command("claude", "manager") is None


class TestSmallConfigs:
    """その他の設定セクションのテスト"""

    def test_logging_level_accepts_warn(self):
        """warn は WARNING として扱う"""
        assert LoggingConfig(level="warn").level == "WARNING"

    def test_dispatch_rejects_negative_retries(self):
        """max_retries は0以上"""
        with pytest.raises(ValueError):
            DispatchConfig(max_retries=-1)

    def test_normalize_provider(self):
        assert normalize_provider(" Gemini ") == "gemini"
        assert normalize_provider(None) == ""

    def test_provider_label(self):
        """既知のプロバイダーは表示名、未知は名前そのもの"""
        assert provider_label("claude") == "Claude Code CLI"
        assert provider_label("ollama") == "ollama"
