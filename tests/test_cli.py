# SPDX-License-Identifier: Apache-2.0
"""
CLI smoke tests that stay offline: static catalogs, config errors and
argument errors.
"""

import json

from llm_gateway.cli import main
from llm_gateway.dispatcher import Dispatcher


def _config(tmp_path, providers):
    path = tmp_path / "providers.json"
    path.write_text(json.dumps({"providers": providers}), encoding="utf-8")
    return str(path)


def test_models_lists_static_catalogs(tmp_path, capsys):
    path = _config(
        tmp_path,
        [
            {"kind": "claude", "name": "claude", "api_key": "sk-ant"},
            {"kind": "qianwen", "name": "qw", "api_key": "dsk"},
        ],
    )

    rc = main(["-c", path, "models", "-p", "claude"])

    out = capsys.readouterr().out
    assert rc == 0
    assert out.startswith("claude:")
    assert "claude-3-haiku-20240307" in out
    assert "qwen-turbo" not in out


def test_models_unknown_provider_fails(tmp_path, capsys):
    path = _config(tmp_path, [{"kind": "claude", "name": "claude", "api_key": "sk-ant"}])
    rc = main(["-c", path, "models", "-p", "ghost"])
    assert rc == 1
    assert "provider_not_found" in capsys.readouterr().err


def test_missing_config_is_an_error(monkeypatch, capsys):
    monkeypatch.delenv("LLM_GATEWAY_CONFIG", raising=False)
    assert main(["models"]) == 1
    assert "no config file" in capsys.readouterr().err


def test_invalid_config_is_an_error(tmp_path, capsys):
    path = _config(tmp_path, [{"kind": "openai", "name": "o", "api_key": "k", "colour": "blue"}])
    assert main(["-c", path, "models"]) == 1
    assert "invalid_config" in capsys.readouterr().err


def test_chat_requires_provider_and_model():
    assert main(["chat", "hello"]) == 2


def test_registered_providers_are_closed_when_a_later_one_fails(tmp_path, monkeypatch, capsys):
    closed = []
    original = Dispatcher.close

    async def close(self):
        closed.append(self.list())
        await original(self)

    monkeypatch.setattr(Dispatcher, "close", close)
    path = _config(
        tmp_path,
        [
            {"kind": "claude", "name": "a", "api_key": "sk-ant"},
            {"kind": "claude", "name": "a", "api_key": "sk-ant"},
        ],
    )

    assert main(["-c", path, "models"]) == 1
    assert "already registered" in capsys.readouterr().err
    assert closed == [["a"]]
