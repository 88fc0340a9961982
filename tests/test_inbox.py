"""コマンド受信箱のテスト"""

import logging

import pytest

from agent_shogun.core.queue import CorruptRecordError
from agent_shogun.core.queue.inbox import INBOX_FILENAME


class TestCommandInbox:
    """CommandInboxのテスト"""

    def test_submit_and_peek(self, inbox):
        """追加した指示を順番どおり参照できる"""
        # Act
        first = inbox.submit("ログイン画面を作る")
        second = inbox.submit("テストを書く", parent_cmd="cmd_root", target_path="tests/")

        # Assert
        entries = inbox.peek()
        assert [e.cmd_id for e in entries] == [first.cmd_id, second.cmd_id]
        assert entries[1].parent_cmd == "cmd_root"
        assert entries[1].target_path == "tests/"
        assert first.cmd_id.startswith("cmd-")

    def test_peek_empty(self, inbox):
        """受信箱がなければ空"""
        assert inbox.peek() == []

    def test_drain_empties_inbox(self, inbox):
        """drain で全件取り出して空にする"""
        # Arrange
        inbox.submit("a")
        inbox.submit("b")

        # Act
        drained = inbox.drain()

        # Assert
        assert [e.description for e in drained] == ["a", "b"]
        assert inbox.peek() == []
        assert inbox.drain() == []

    def test_file_location(self, inbox, queue_root):
        inbox.submit("a")
        assert (queue_root / INBOX_FILENAME).exists()

    def test_corrupt_inbox_is_backed_up_on_drain(self, inbox, queue_root, caplog):
        """壊れた受信箱は退避して空として扱う"""
        # Arrange
        queue_root.mkdir(parents=True)
        (queue_root / INBOX_FILENAME).write_text("commands: {oops", encoding="utf-8")

        # Act
        with caplog.at_level(logging.WARNING):
            drained = inbox.drain()

        # Assert
        assert drained == []
        assert (queue_root / "commander_to_manager.corrupt").exists()
        assert inbox.peek() == []
        assert "受信箱" in caplog.text

    def test_submit_to_corrupt_inbox_raises(self, inbox, queue_root):
        """壊れた受信箱への追加は失敗し、内容は変えない"""
        # Arrange
        queue_root.mkdir(parents=True)
        path = queue_root / INBOX_FILENAME
        path.write_text("commands: 3\n", encoding="utf-8")

        # Act & Assert
        with pytest.raises(CorruptRecordError):
            inbox.submit("x")
        assert path.read_text(encoding="utf-8") == "commands: 3\n"

    def test_list_document_is_rejected(self, inbox, queue_root):
        """トップレベルがリストの受信箱は壊れているとみなす"""
        # Arrange
        queue_root.mkdir(parents=True)
        path = queue_root / INBOX_FILENAME
        path.write_text("- description: important\n", encoding="utf-8")

        # Act & Assert
        with pytest.raises(CorruptRecordError):
            inbox.peek()
        with pytest.raises(CorruptRecordError):
            inbox.submit("x")
        assert path.read_text(encoding="utf-8") == "- description: important\n"

    def test_list_document_is_backed_up_on_drain(self, inbox, queue_root):
        """リスト形式の指示は捨てずに退避する"""
        # Arrange
        queue_root.mkdir(parents=True)
        (queue_root / INBOX_FILENAME).write_text("- description: important\n", encoding="utf-8")

        # Act
        drained = inbox.drain()

        # Assert
        assert drained == []
        backup = queue_root / "commander_to_manager.corrupt"
        assert backup.read_text(encoding="utf-8") == "- description: important\n"

    def test_mapping_without_commands_is_rejected(self, inbox, queue_root):
        """commands キーのないマッピングは壊れているとみなす"""
        queue_root.mkdir(parents=True)
        (queue_root / INBOX_FILENAME).write_text("command:\n- description: a\n", encoding="utf-8")

        with pytest.raises(CorruptRecordError, match="commands"):
            inbox.peek()

    @pytest.mark.parametrize("text", ["", "\n", "commands:\n", "commands: []\n", "{}\n"])
    def test_empty_documents_are_empty(self, inbox, queue_root, text):
        """空ファイルや空の commands は空の受信箱"""
        queue_root.mkdir(parents=True)
        (queue_root / INBOX_FILENAME).write_text(text, encoding="utf-8")

        assert inbox.peek() == []
