"""
Tests for heira_keeper.logging_config.
"""

from __future__ import annotations

import json
import logging

import pytest

from heira_keeper.logging_config import _HumanFormatter, _JSONFormatter, setup_logging


def _record(msg: str = "Executing escrow", **extra) -> logging.LogRecord:
    record = logging.LogRecord("heira_inspector", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in root.handlers:
        if isinstance(h, logging.FileHandler):
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_includes_context(self):
        out = json.loads(_JSONFormatter().format(_record(network="sepolia", escrow="0xabc")))
        assert out["msg"] == "Executing escrow"
        assert out["level"] == "INFO"
        assert out["logger"] == "heira_inspector"
        assert out["network"] == "sepolia"
        assert out["escrow"] == "0xabc"

    def test_json_omits_missing_context(self):
        out = json.loads(_JSONFormatter().format(_record()))
        assert "network" not in out
        assert "escrow" not in out

    def test_human_context_suffix(self):
        line = _HumanFormatter(colour=False).format(_record(network="base", escrow="0x1"))
        assert "heira_inspector: Executing escrow" in line
        assert line.endswith("(network=base escrow=0x1)")
        assert "\033[" not in line


class TestSetupLogging:
    def test_level_and_handlers(self, restore_root):
        setup_logging(level="warning", fmt="json")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, _JSONFormatter)

    def test_file_output_is_json(self, restore_root, tmp_path):
        log_file = tmp_path / "logs" / "keeper.log"
        setup_logging(level="INFO", fmt="human", log_file=str(log_file))
        logging.getLogger("heira_keeper").info("tick done", extra={"network": "sepolia"})
        for h in logging.getLogger().handlers:
            h.flush()
        line = log_file.read_text().strip().splitlines()[-1]
        assert json.loads(line)["network"] == "sepolia"

    def test_web3_debug_suppressed(self, restore_root):
        setup_logging(level="DEBUG")
        assert logging.getLogger("web3").level == logging.INFO
