"""Tests for the development CLIs."""

from __future__ import annotations

import json
from io import BytesIO
from pathlib import Path

import pytest
import typer
from PIL import Image
from typer.testing import CliRunner

from quire.dev import clear_cache, propose


@pytest.fixture
def settings_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(
        f"cache:\n  backend: sql\n  url: sqlite:///{tmp_path / 'artifacts.db'}\nhashing:\n  executor: thread\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("QUIRE_SETTINGS", str(path))
    return path


def _app(command: object) -> typer.Typer:
    app = typer.Typer()
    app.command()(command)
    return app


def _write_page(path: Path, color: tuple[int, int, int]) -> None:
    buffer = BytesIO()
    Image.new("RGB", (32, 24), color).save(buffer, format="PNG")
    path.write_bytes(buffer.getvalue())


def test_propose_prints_filename_proposals(tmp_path: Path, settings_file: Path) -> None:
    root = tmp_path / "book"
    root.mkdir()
    _write_page(root / "page01.png", (200, 10, 10))
    _write_page(root / "page02.png", (10, 200, 10))
    _write_page(root / "cover.png", (10, 10, 200))

    result = CliRunner().invoke(_app(propose.main), ["--root", str(root), "--memory-cache"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["strategy"] == "filename"
    assert payload["images"] == 3
    assert [proposal["labels"] for proposal in payload["proposals"]] == [["page01.png", "page02.png"]]
    assert payload["proposals"][0]["reason"] == "Filename stem: page"
    assert payload["warnings"] == []


def test_propose_rejects_unknown_strategy(tmp_path: Path, settings_file: Path) -> None:
    result = CliRunner().invoke(_app(propose.main), ["--root", str(tmp_path), "--strategy", "ocr"])

    assert result.exit_code != 0


def test_clear_cache_removes_blobs(tmp_path: Path, settings_file: Path) -> None:
    root = tmp_path / "book"
    root.mkdir()
    _write_page(root / "leaf.png", (90, 90, 90))
    runner = CliRunner()
    assert runner.invoke(_app(propose.main), ["--root", str(root)]).exit_code == 0

    result = runner.invoke(_app(clear_cache.main), ["--cache-url", f"sqlite:///{tmp_path / 'artifacts.db'}"])

    assert result.exit_code == 0, result.output
    # One working image and one thumbnail were cached during ingest.
    assert result.stdout.strip() == "removed 2 cached artefacts"
