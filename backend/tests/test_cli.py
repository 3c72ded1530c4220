"""Tests for the typer CLI against the mock generation service."""

import json

import pytest
from typer.testing import CliRunner

from scenepipe.cli.commands import app
from scenepipe.config import get_settings

runner = CliRunner()


@pytest.fixture
def fast_settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SCENEPIPE_POLLING__INTERVAL_SECONDS", "0.01")
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


def test_extract_prints_recovered_command(tmp_path):
    reply = tmp_path / "reply.txt"
    reply.write_text(
        'Let me draw it first.\n```json\n{"action": "generate_image", "params": {"prompt": "a fox"}}\n```',
        encoding="utf-8",
    )
    result = runner.invoke(app, ["extract", str(reply)])
    assert result.exit_code == 0
    assert '"generate_image"' in result.output
    assert '"a fox"' in result.output


def test_extract_fails_without_json(tmp_path):
    reply = tmp_path / "reply.txt"
    reply.write_text("I am not sure what to do next.", encoding="utf-8")
    result = runner.invoke(app, ["extract", str(reply)])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_generate_runs_screenplay_with_mock_service(fast_settings):
    screenplay = fast_settings / "screenplay.json"
    screenplay.write_text(
        json.dumps({
            "task_id": "t1",
            "script_title": "Fox",
            "scenes": [
                {"scene_id": 1, "image_prompt": "a fox in snow", "video_prompt": "the fox runs"},
                {"scene_id": 2, "image_prompt": "a fox at a river", "video_prompt": "the fox drinks"},
            ],
        }),
        encoding="utf-8",
    )
    result = runner.invoke(app, ["generate", str(screenplay), "--mock", "--concurrency", "2"])
    assert result.exit_code == 0, result.output
    assert "Run completed" in result.output
    assert "2 succeeded, 0 failed" in result.output


def test_generate_rejects_invalid_screenplay(fast_settings):
    screenplay = fast_settings / "screenplay.json"
    screenplay.write_text(json.dumps({"scenes": []}), encoding="utf-8")
    result = runner.invoke(app, ["generate", str(screenplay), "--mock"])
    assert result.exit_code == 1
    assert "Could not load screenplay" in result.output
