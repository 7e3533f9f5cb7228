from __future__ import annotations

import asyncio
import json

import pytest

from deskpilot.cli import EXIT_CONFIG_ERROR, EXIT_OK, main
from deskpilot.runtime.task import Task


def _seed(project_dir, text: str = "hello") -> None:
    async def _write() -> None:
        task = Task(project_dir=project_dir, task_id="default")
        task.context.add_user_message(text)
        await task.context.save()

    asyncio.run(_write())


def test_context_show_on_empty_project(tmp_path, capsys):
    assert main(["context", "show", "--project", str(tmp_path)]) == EXIT_OK
    assert "total_cost=0.000000" in capsys.readouterr().out


def test_context_show_json(tmp_path, capsys):
    _seed(tmp_path)

    assert main(["context", "show", "--json", "--project", str(tmp_path)]) == EXIT_OK

    record = json.loads(capsys.readouterr().out)
    assert record["version"] == 2
    assert record["contextMessages"][0]["content"] == "hello"


def test_context_markdown_to_file(tmp_path):
    _seed(tmp_path, "explain the build")
    out = tmp_path / "export" / "context.md"

    assert main(["context", "markdown", "--project", str(tmp_path), "-o", str(out)]) == EXIT_OK
    assert "explain the build" in out.read_text(encoding="utf-8")


def test_context_clear(tmp_path, capsys):
    _seed(tmp_path)

    assert main(["context", "clear", "--project", str(tmp_path)]) == EXIT_OK
    capsys.readouterr()
    main(["context", "show", "--json", "--project", str(tmp_path)])

    assert json.loads(capsys.readouterr().out)["contextMessages"] == []


def test_models_list_without_providers(tmp_path, capsys):
    assert main(["models", "list", "--project", str(tmp_path)]) == EXIT_CONFIG_ERROR
    assert "No providers configured." in capsys.readouterr().err


def test_run_without_model_is_a_config_error(tmp_path, capsys):
    assert main(["run", "hi", "--project", str(tmp_path)]) == EXIT_CONFIG_ERROR
    assert "no model selected" in capsys.readouterr().err


def test_run_with_unknown_profile(tmp_path, capsys):
    assert main(["run", "hi", "--profile", "nope", "--project", str(tmp_path)]) == EXIT_CONFIG_ERROR
    assert "not found" in capsys.readouterr().err


def test_command_is_required():
    with pytest.raises(SystemExit):
        main([])
