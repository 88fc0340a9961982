"""Agent Shogun 設定管理モジュール

Pydantic Settingsを使用した設定管理。
config/settings.yaml と環境変数から設定を読み込む。

プール構成（ワーカー数・プロバイダー割当）は意図的に緩く受け付ける。
数値として解釈できない値の扱いは ConfigResolver (core.pool) が決める。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROLES = ("commander", "manager", "worker")

DEFAULT_PROVIDER = "claude"

# 既知プロバイダーの表示名（未知のプロバイダーは名前をそのまま使う）
PROVIDER_LABELS: dict[str, str] = {
    "claude": "Claude Code CLI",
    "codex": "Codex CLI",
    "gemini": "Gemini CLI",
}


class ConfigError(Exception):
    """設定ソースが存在するが解釈できない"""

    pass


def normalize_provider(value: Any) -> str:
    """プロバイダー名を正規化（空白除去・小文字化）"""
    if value is None:
        return ""
    return str(value).strip().lower()


def _blank_to_none(value: Any) -> Any:
    # YAML の `key:` （値なし）は None、空文字も未設定として扱う
    if isinstance(value, str) and not value.strip():
        return None
    return value


class AICLIConfig(BaseModel):
    """AI CLI 設定

    `<provider>_binary` と `<provider>_<role>_cmd` は任意のプロバイダー名で
    書けるため、追加キーとして保持する。
    """

    model_config = ConfigDict(extra="allow")

    provider: str = Field(default=DEFAULT_PROVIDER, description="全ロール共通の既定プロバイダー")
    commander_provider: str | None = Field(default=None, description="commander専用プロバイダー")
    manager_provider: str | None = Field(default=None, description="manager専用プロバイダー")
    worker_provider: str | None = Field(default=None, description="worker専用プロバイダー")

    @field_validator("provider", mode="before")
    @classmethod
    def _default_provider(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        return DEFAULT_PROVIDER if value is None else str(value)

    @field_validator("commander_provider", "manager_provider", "worker_provider", mode="before")
    @classmethod
    def _role_provider(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        return None if value is None else str(value)

    def _extra(self, key: str) -> str | None:
        extra = self.model_extra or {}
        value = _blank_to_none(extra.get(key))
        return None if value is None else str(value).strip()

    def provider_for(self, role: str) -> str:
        """ロールの実効プロバイダーを取得（ロール別指定 → 既定）"""
        override = getattr(self, f"{role}_provider", None)
        return normalize_provider(override or self.provider) or DEFAULT_PROVIDER

    def binary_for(self, provider: str) -> str:
        """プロバイダーのCLIバイナリ名を取得

        `<provider>_binary` が未設定ならプロバイダー名そのものを使う。
        """
        provider = normalize_provider(provider)
        return self._extra(f"{provider}_binary") or provider

    def role_command(self, provider: str, role: str) -> str | None:
        """`<provider>_<role>_cmd` を取得（未設定ならNone）"""
        return self._extra(f"{normalize_provider(provider)}_{role}_cmd")


class WorkersConfig(BaseModel):
    """ワーカープール設定

    count / llm_counts の値は検証せずそのまま保持する。
    """

    count: Any = Field(default=None, description="スカラーのワーカー数（llm_counts未使用時）")
    llm_counts: dict[str, Any] = Field(
        default_factory=dict, description="プロバイダー別ワーカー数（宣言順に割当）"
    )
    provider_commands: dict[str, str | None] = Field(
        default_factory=dict, description="プロバイダー別の起動コマンド（空ならバイナリ名）"
    )

    @field_validator("llm_counts", "provider_commands", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("provider_commands", mode="after")
    @classmethod
    def _normalize_commands(cls, value: dict[str, str | None]) -> dict[str, str]:
        # 値のないエントリは既定のコマンドに任せる
        return {
            normalize_provider(k): v.strip() for k, v in value.items() if v and v.strip()
        }


class QueueConfig(BaseModel):
    """キュー設定"""

    path: str = Field(default="queue", description="キューディレクトリ")
    lock_timeout_seconds: float = Field(default=10.0, gt=0, description="プールロック待機秒")


class DispatchConfig(BaseModel):
    """ディスパッチャ設定"""

    poll_interval_seconds: float = Field(default=2.0, gt=0, description="ポーリング間隔秒")
    max_poll_interval_seconds: float = Field(default=30.0, gt=0, description="最大ポーリング間隔秒")
    backoff_multiplier: float = Field(default=1.5, ge=1.0, description="アイドル時の間隔倍率")
    assignment_timeout_seconds: float = Field(
        default=120.0, gt=0, description="割当後に着手されない場合の放棄判定秒"
    )
    max_runtime_seconds: float = Field(default=1800.0, gt=0, description="実行中タスクの上限秒")
    max_retries: int = Field(default=3, ge=0, le=10, description="最大リトライ回数")
    retry_strategy: Literal["none", "same_worker", "different_worker", "any_worker"] = Field(
        default="different_worker"
    )
    retry_backoff_seconds: float = Field(default=1.0, ge=0, description="リトライ初期待機秒")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, description="リトライ待機倍率")


class SessionConfig(BaseModel):
    """tmux セッション設定"""

    commander_session: str = Field(default="shogun")
    pool_session: str = Field(default="multiagent")


class LoggingConfig(BaseModel):
    """ロギング設定"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    path: str | None = Field(default=None, description="ログ出力ディレクトリ")

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().upper()
            # debug | info | warn | error 表記も受け付ける
            return "WARNING" if value == "WARN" else value
        return value


class ShogunSettings(BaseSettings):
    """Agent Shogun 全体設定

    設定の優先順位:
    1. YAMLファイル
    2. 環境変数 (SHOGUN_*、ネストは __ 区切り)
    3. デフォルト値

    settings.yaml の language, shell, skill など他ツール向けのキーは無視する。
    """

    model_config = SettingsConfigDict(
        env_prefix="SHOGUN_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    ai_cli: AICLIConfig = Field(default_factory=AICLIConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("ai_cli", "workers", "queue", "dispatch", "session", "logging", mode="before")
    @classmethod
    def _empty_section(cls, value: Any) -> Any:
        # `workers:` だけ書かれたセクションは未設定扱い
        return {} if value is None else value

    @classmethod
    def search_paths(cls) -> list[Path]:
        """設定ファイルの探索パス"""
        return [
            Path.cwd() / "config" / "settings.yaml",
            Path.cwd() / "shogun.config.yaml",
            Path.home() / ".shogun" / "config.yaml",
        ]

    @classmethod
    def from_mapping(cls, data: Any, source: str = "<mapping>") -> ShogunSettings:
        """パース済みのYAMLデータから設定を生成

        Raises:
            ConfigError: トップレベルがマッピングでない、またはセクションの形が不正
        """
        if data is None:
            data = {}
        if not isinstance(data, dict) or not all(isinstance(k, str) for k in data):
            raise ConfigError(f"{source}: top-level document must be a mapping")
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"{source}: {e}") from e

    @classmethod
    def from_yaml(cls, config_path: Path | str | None = None) -> ShogunSettings:
        """YAMLファイルから設定を読み込む

        Args:
            config_path: 設定ファイルパス。Noneの場合はデフォルトパスを探索

        Returns:
            ShogunSettings インスタンス（ファイルが無ければデフォルト値）

        Raises:
            ConfigError: ファイルが存在するがYAMLとして解釈できない場合
        """
        if config_path is None:
            for path in cls.search_paths():
                if path.exists():
                    config_path = path
                    break

        if config_path and Path(config_path).exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    yaml_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"{config_path}: invalid YAML: {e}") from e
            return cls.from_mapping(yaml_config, source=str(config_path))

        return cls()

    def get_queue_path(self, root: Path | str | None = None) -> Path:
        """キューディレクトリを絶対パスで取得"""
        queue = Path(self.queue.path).expanduser()
        if not queue.is_absolute():
            queue = Path(root or Path.cwd()) / queue
        return queue.resolve()


def provider_label(provider: str) -> str:
    """プロバイダーの表示名"""
    provider = normalize_provider(provider)
    return PROVIDER_LABELS.get(provider, provider)
