"""
Tests for the run_keeper entry point.
"""

from __future__ import annotations

import pytest

import run_keeper
from heira_keeper.config import HeiraConfig


def _cfg(tmp_path) -> HeiraConfig:
    cfg = HeiraConfig()
    cfg.storage.path = str(tmp_path / "escrows.db")
    return cfg


class TestParseArgs:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("HEIRA_CONFIG", raising=False)
        args = run_keeper.parse_args([])
        assert args.config is None
        assert not args.once
        assert not args.no_api
        assert args.log_level is None

    def test_flags(self):
        args = run_keeper.parse_args(["--config", "heira.toml", "--once", "--no-api",
                                      "--log-level", "debug"])
        assert args.config == "heira.toml"
        assert args.once
        assert args.no_api
        assert args.log_level == "debug"

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("HEIRA_CONFIG", "/etc/heira.toml")
        assert run_keeper.parse_args([]).config == "/etc/heira.toml"


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_missing_key_exits_nonzero(self, tmp_path):
        assert await run_keeper.run_once(_cfg(tmp_path)) == 1


class TestServe:
    @pytest.mark.asyncio
    async def test_nothing_to_run(self, tmp_path):
        cfg = _cfg(tmp_path)
        cfg.api.enabled = False
        assert await run_keeper.serve(cfg) == 1
