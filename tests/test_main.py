"""Tests for process wiring and structured logging."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from vcd_mock import MockVcdPlatform

from vcd_provisioner.config import Config
from vcd_provisioner.main import JsonFormatter, serve


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("vcd_provisioner.executor", logging.INFO, __file__, 1, "Applied", (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_extra_fields_are_included(self) -> None:
        output = json.loads(JsonFormatter().format(make_record(resource_key="web-1", kind="vm")))

        assert output["message"] == "Applied"
        assert output["level"] == "INFO"
        assert output["logger"] == "vcd_provisioner.executor"
        assert output["resource_key"] == "web-1"
        assert output["kind"] == "vm"
        assert output["timestamp"].endswith("Z")
        assert "lineno" not in output

    def test_exception_is_formatted(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()

        output = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in output["exception"]

    def test_unserializable_values_use_str(self) -> None:
        output = json.loads(JsonFormatter().format(make_record(path=Path("/tmp/state.yaml"))))

        assert output["path"] == "/tmp/state.yaml"


class TestServe:
    """Tests for serve() startup failures."""

    @pytest.mark.asyncio
    @patch.dict("os.environ", {"VCD_OPERATION_TIMEOUT": "soon"})
    async def test_invalid_environment(self) -> None:
        assert await serve(MockVcdPlatform()) == 1

    @pytest.mark.asyncio
    async def test_unreadable_state_file(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state.yaml"
        state_file.write_text("resources: [unclosed\n")

        assert await serve(MockVcdPlatform(), Config(state_file=state_file)) == 1
