"""キューレコードモデル

ワーカーごとのタスクレコード（Dispatcherが書く）と
レポートレコード（ワーカー自身が書く）を定義する。
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_ORDINAL_SUFFIX = re.compile(r"(\d+)$")


class CorruptRecordError(Exception):
    """キューレコードが解釈できない"""

    pass


class TaskStatus(StrEnum):
    """タスクレコードの状態"""

    IDLE = "idle"  # 未割当
    ASSIGNED = "assigned"  # 割当済み・未着手
    IN_PROGRESS = "in_progress"  # 実行中
    DONE = "done"  # 完了
    FAILED = "failed"  # 失敗


class ReportStatus(StrEnum):
    """レポートレコードの状態"""

    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


def now_iso() -> str:
    """現在時刻をISO-8601で返す"""
    return datetime.now(UTC).isoformat(timespec="seconds")


def parse_timestamp(value: str) -> datetime | None:
    """ISO-8601文字列をdatetimeに変換（空・不正ならNone）"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _or_none(value: str) -> str | None:
    return value or None


class TaskRecord(BaseModel):
    """タスクレコード

    ワーカーは読むだけで、書き込みはDispatcherのみ。
    """

    model_config = ConfigDict(frozen=True)

    task_id: str = ""
    parent_cmd: str = ""
    description: str = ""
    target_path: str = ""
    status: TaskStatus = TaskStatus.IDLE
    timestamp: str = ""

    @field_validator(
        "task_id", "parent_cmd", "description", "target_path", "timestamp", mode="before"
    )
    @classmethod
    def _normalize_text(cls, value: Any) -> str:
        return _text(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return TaskStatus.IDLE if value is None else str(value).strip().lower()

    @classmethod
    def idle(cls) -> TaskRecord:
        """初期状態（未割当）のレコード"""
        return cls()

    @property
    def is_idle(self) -> bool:
        return self.status == TaskStatus.IDLE

    def to_document(self) -> dict[str, Any]:
        """YAML文書に変換（`task:` キー配下に格納）"""
        return {
            "task": {
                "task_id": _or_none(self.task_id),
                "parent_cmd": _or_none(self.parent_cmd),
                "description": _or_none(self.description),
                "target_path": _or_none(self.target_path),
                "status": self.status.value,
                "timestamp": self.timestamp,
            }
        }


class ReportRecord(BaseModel):
    """レポートレコード

    所有ワーカーのみが書き、Dispatcherは読むだけ。
    """

    model_config = ConfigDict(frozen=True)

    worker_id: int = Field(ge=1)
    task_id: str = ""
    status: ReportStatus = ReportStatus.IDLE
    result: str = ""
    timestamp: str = ""

    @field_validator("worker_id", mode="before")
    @classmethod
    def _parse_worker_id(cls, value: Any) -> Any:
        # `worker3` のような名前表記も受け付ける
        if isinstance(value, str):
            match = _ORDINAL_SUFFIX.search(value.strip())
            if match:
                return int(match.group(1))
        return value

    @field_validator("task_id", "result", "timestamp", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> str:
        return _text(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return ReportStatus.IDLE if value is None else str(value).strip().lower()

    @classmethod
    def idle(cls, worker_id: int) -> ReportRecord:
        """初期状態のレコード"""
        return cls(worker_id=worker_id)

    @property
    def is_idle(self) -> bool:
        return self.status == ReportStatus.IDLE

    def matches(self, task: TaskRecord) -> bool:
        """タスクレコードと task_id が一致するか"""
        return bool(self.task_id) and self.task_id == task.task_id

    def to_document(self) -> dict[str, Any]:
        """YAML文書に変換"""
        return {
            "worker_id": self.worker_id,
            "task_id": _or_none(self.task_id),
            "timestamp": self.timestamp,
            "status": self.status.value,
            "result": _or_none(self.result),
        }


def dump_document(document: dict[str, Any], header: str | None = None) -> str:
    """レコード文書をYAMLテキストに変換"""
    body = yaml.safe_dump(document, allow_unicode=True, sort_keys=False)
    if header:
        return f"# {header}\n{body}"
    return body


def _load_mapping(text: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise CorruptRecordError(f"invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise CorruptRecordError("record document must be a mapping")
    return data


def parse_task_document(text: str) -> TaskRecord:
    """タスクレコードのYAMLテキストを解析

    Raises:
        CorruptRecordError: YAMLとして不正、または形式が不正な場合
    """
    data = _load_mapping(text)
    body = data.get("task")
    if not isinstance(body, dict):
        raise CorruptRecordError("task record must contain a `task` mapping")
    try:
        return TaskRecord.model_validate(body)
    except ValidationError as e:
        raise CorruptRecordError(str(e)) from e


def parse_report_document(text: str) -> ReportRecord:
    """レポートレコードのYAMLテキストを解析

    Raises:
        CorruptRecordError: YAMLとして不正、または形式が不正な場合
    """
    data = _load_mapping(text)
    try:
        return ReportRecord.model_validate(data)
    except ValidationError as e:
        raise CorruptRecordError(str(e)) from e
