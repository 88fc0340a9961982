"""コマンド受信箱

commander から manager（Dispatcher）への指示を YAML ファイル
`<queue>/commander_to_manager.yaml` に追記形式で渡す。
書き手が複数になり得るため、読み書きはファイルロック下で行う。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import portalocker
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from ulid import ULID

from .records import CorruptRecordError, dump_document, now_iso

logger = logging.getLogger(__name__)

INBOX_FILENAME = "commander_to_manager.yaml"


class InboxEntry(BaseModel):
    """受信箱の1指示"""

    cmd_id: str = Field(default_factory=lambda: f"cmd-{ULID()}")
    description: str
    parent_cmd: str = ""
    target_path: str = ""
    timestamp: str = Field(default_factory=now_iso)

    @field_validator("parent_cmd", "target_path", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class CommandInbox:
    """commander → manager の指示キュー"""

    def __init__(self, root: Path | str, lock_timeout: float = 10.0):
        self.path = Path(root) / INBOX_FILENAME
        self.lock_timeout = lock_timeout

    @staticmethod
    def _parse(text: str) -> list[InboxEntry]:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise CorruptRecordError(f"invalid YAML: {e}") from e
        if data is None:
            return []
        if not isinstance(data, dict):
            raise CorruptRecordError(f"inbox must be a mapping, got {type(data).__name__}")
        if data and "commands" not in data:
            raise CorruptRecordError(f"missing `commands`: keys={sorted(map(str, data))}")
        commands = data.get("commands")
        if commands is None:
            return []
        if not isinstance(commands, list):
            raise CorruptRecordError("`commands` must be a list")
        try:
            return [InboxEntry.model_validate(item) for item in commands]
        except ValidationError as e:
            raise CorruptRecordError(str(e)) from e

    @staticmethod
    def _dump(entries: list[InboxEntry]) -> str:
        return dump_document({"commands": [e.model_dump() for e in entries]})

    def _lock(self, mode: str) -> portalocker.Lock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return portalocker.Lock(self.path, mode=mode, encoding="utf-8", timeout=self.lock_timeout)

    def submit(
        self,
        description: str,
        parent_cmd: str | None = None,
        target_path: str | None = None,
    ) -> InboxEntry:
        """指示を追加

        Raises:
            CorruptRecordError: 既存の受信箱が壊れている場合
        """
        entry = InboxEntry(description=description, parent_cmd=parent_cmd, target_path=target_path)
        with self._lock("a+") as f:
            f.seek(0)
            entries = self._parse(f.read())
            entries.append(entry)
            f.seek(0)
            f.truncate()
            f.write(self._dump(entries))
        logger.info(f"指示を受信箱に追加しました: {entry.cmd_id}")
        return entry

    def peek(self) -> list[InboxEntry]:
        """受信箱の内容を取得（取り出さない）

        Raises:
            CorruptRecordError: 受信箱が壊れている場合
        """
        if not self.path.exists():
            return []
        with portalocker.Lock(
            self.path, mode="r", encoding="utf-8", timeout=self.lock_timeout
        ) as f:
            return self._parse(f.read())

    def drain(self) -> list[InboxEntry]:
        """受信箱の全指示を取り出して空にする

        壊れた受信箱は警告を出して空として扱い、内容を退避する。
        """
        if not self.path.exists():
            return []
        with self._lock("a+") as f:
            f.seek(0)
            text = f.read()
            try:
                entries = self._parse(text)
            except CorruptRecordError as e:
                logger.warning(f"壊れた受信箱を退避します: {self.path}: {e}")
                self.path.with_suffix(".corrupt").write_text(text, encoding="utf-8")
                entries = []
            f.seek(0)
            f.truncate()
            f.write(self._dump([]))
        return entries
