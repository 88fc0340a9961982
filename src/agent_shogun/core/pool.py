"""ワーカープール解決 (ConfigResolver)

階層化された設定から、ワーカーID・プロバイダー・起動コマンドの
確定済みプール計画 (PoolPlan) を生成する。

ワーカー数はソフトな容量設定のため、不正値はエラーにせず
[1, MAX_WORKERS] に丸めて警告を出す。
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import ShogunSettings, normalize_provider

logger = logging.getLogger(__name__)

# tmux の分割レイアウト前提の上限
MAX_WORKERS = 8
MIN_WORKERS = 1
DEFAULT_WORKER_COUNT = 8

_INT_PATTERN = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class WorkerIdentity:
    """プール内の1スロット（序数 + プロバイダー + 起動コマンド）"""

    ordinal: int
    provider: str
    command: str

    @property
    def name(self) -> str:
        """キューファイル名・ウィンドウ名に使う識別名"""
        return f"worker{self.ordinal}"


@dataclass(frozen=True)
class RoleBinding:
    """commander / manager のプロバイダー割当"""

    role: str
    provider: str
    command: str


@dataclass(frozen=True)
class PoolPlan:
    """解決済みのプール計画

    一度生成したら変更しない。設定を読み直す場合は新しい計画を生成する。
    """

    workers: tuple[WorkerIdentity, ...]
    commander: RoleBinding
    manager: RoleBinding
    warnings: tuple[str, ...] = field(default=(), compare=False)

    @property
    def size(self) -> int:
        return len(self.workers)

    def ordinals(self) -> list[int]:
        return [w.ordinal for w in self.workers]

    def get(self, ordinal: int) -> WorkerIdentity | None:
        for worker in self.workers:
            if worker.ordinal == ordinal:
                return worker
        return None

    def providers(self) -> dict[str, list[int]]:
        """プロバイダー → 担当序数"""
        result: dict[str, list[int]] = {}
        for worker in self.workers:
            result.setdefault(worker.provider, []).append(worker.ordinal)
        return result

    def to_dict(self) -> dict[str, Any]:
        """表示・dry-run 出力用の辞書表現"""
        return {
            "commander": {"provider": self.commander.provider, "command": self.commander.command},
            "manager": {"provider": self.manager.provider, "command": self.manager.command},
            "workers": [
                {"ordinal": w.ordinal, "name": w.name, "provider": w.provider, "command": w.command}
                for w in self.workers
            ],
            "warnings": list(self.warnings),
        }


def _parse_int(value: Any) -> int | None:
    """整数として解釈できる値のみ返す（boolは除外）"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_PATTERN.match(value.strip()):
        return int(value.strip())
    return None


def _quota_allocation(
    llm_counts: Mapping[str, Any], warnings: list[str]
) -> list[tuple[str, int]]:
    """llm_counts から有効な (provider, count) を宣言順で抽出"""
    allocation: list[tuple[str, int]] = []
    for raw_provider, raw_count in llm_counts.items():
        provider = normalize_provider(raw_provider)
        count = _parse_int(raw_count)
        if not provider or count is None or count < 0:
            warnings.append(f"ignored worker quota {raw_provider!r}: {raw_count!r}")
            continue
        if count > 0:
            allocation.append((provider, count))
    return allocation


def _scalar_count(raw_count: Any, warnings: list[str]) -> int:
    """スカラー count を解決して [MIN, MAX] に丸める"""
    if raw_count is None:
        return DEFAULT_WORKER_COUNT
    count = _parse_int(raw_count)
    if count is None:
        warnings.append(
            f"worker count {raw_count!r} is not an integer; using {DEFAULT_WORKER_COUNT}"
        )
        return DEFAULT_WORKER_COUNT
    return _clamp(count, warnings)


def _clamp(count: int, warnings: list[str]) -> int:
    clamped = max(MIN_WORKERS, min(MAX_WORKERS, count))
    if clamped != count:
        warnings.append(f"worker count {count} clamped to {clamped}")
    return clamped


def _worker_command(settings: ShogunSettings, provider: str) -> str:
    """ワーカー起動コマンド: provider_commands → <provider>_worker_cmd → バイナリ"""
    command = settings.workers.provider_commands.get(provider, "")
    if command:
        return command
    return settings.ai_cli.role_command(provider, "worker") or settings.ai_cli.binary_for(provider)


def _role_binding(settings: ShogunSettings, role: str) -> RoleBinding:
    provider = settings.ai_cli.provider_for(role)
    command = settings.ai_cli.role_command(provider, role) or settings.ai_cli.binary_for(provider)
    return RoleBinding(role=role, provider=provider, command=command)


def _coerce_settings(raw: ShogunSettings | Mapping[str, Any] | None) -> ShogunSettings:
    if raw is None:
        return ShogunSettings()
    if isinstance(raw, ShogunSettings):
        return raw
    return ShogunSettings.from_mapping(dict(raw))


def resolve(raw: ShogunSettings | Mapping[str, Any] | None = None) -> PoolPlan:
    """設定からプール計画を解決

    Args:
        raw: 設定オブジェクト、パース済みYAMLマッピング、またはNone（既定値）

    Returns:
        PoolPlan

    Raises:
        ConfigError: マッピングの構造が不正な場合
    """
    settings = _coerce_settings(raw)
    warnings: list[str] = []

    allocation = _quota_allocation(settings.workers.llm_counts, warnings)
    total = sum(count for _, count in allocation)

    workers: list[WorkerIdentity] = []
    if total > 0:
        if total > MAX_WORKERS:
            warnings.append(f"worker quota total {total} clamped to {MAX_WORKERS}")
        ordinal = 1
        for provider, count in allocation:
            command = _worker_command(settings, provider)
            for _ in range(count):
                if ordinal > MAX_WORKERS:
                    break
                workers.append(WorkerIdentity(ordinal=ordinal, provider=provider, command=command))
                ordinal += 1
    else:
        count = _scalar_count(settings.workers.count, warnings)
        provider = settings.ai_cli.provider_for("worker")
        command = _worker_command(settings, provider)
        workers = [
            WorkerIdentity(ordinal=i, provider=provider, command=command)
            for i in range(1, count + 1)
        ]

    for message in warnings:
        logger.warning(message)

    return PoolPlan(
        workers=tuple(workers),
        commander=_role_binding(settings, "commander"),
        manager=_role_binding(settings, "manager"),
        warnings=tuple(warnings),
    )


def resolve_file(config_path: Path | str | None = None) -> PoolPlan:
    """設定ファイルを読み込んでプール計画を解決"""
    return resolve(ShogunSettings.from_yaml(config_path))
