from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

import icon_cli
import icon_core
import icon_http

from fakes import FakeResponse, FakeSession, chat_response, error_response, image_response, png_bytes


@pytest.fixture()
def fake(monkeypatch: pytest.MonkeyPatch) -> FakeSession:
    session = FakeSession()
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(icon_http.requests, "Session", lambda: session)
    return session


def _queue_icon(session: FakeSession, n: int) -> None:
    session.responses.append(image_response(f"https://blob/{n}.png"))
    session.downloads.append(FakeResponse(200, content=png_bytes(color=(n, n, n))))


def test_missing_key_is_config_error(monkeypatch, capsys) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert icon_cli.main(["--labels", "Mail", "--theme", "retro"]) == icon_cli.EXIT_CONFIG
    assert "OPENAI_API_KEY" in capsys.readouterr().err


@pytest.mark.parametrize(
    "argv",
    [
        ["--theme", "retro"],
        ["--labels", "Mail"],
        ["--labels", "Mail", "--image", "a.png", "--theme", "retro"],
        ["--image", "a.png"] * 6 + ["--theme", "retro"],
        ["--labels", "Mail", "--extract-only"],
    ],
)
def test_bad_arguments_exit_with_usage(fake, argv) -> None:
    with pytest.raises(SystemExit) as info:
        icon_cli.main(argv)
    assert info.value.code == 2


def test_labels_run_saves_icons_and_prints_json(fake, tmp_path: Path, capsys) -> None:
    _queue_icon(fake, 1)
    _queue_icon(fake, 2)

    code = icon_cli.main([
        "--labels", "Mail, Safari",
        "--theme", "retro",
        "--min-interval", "0",
        "--output-dir", str(tmp_path),
        "--json",
    ])

    assert code == icon_cli.EXIT_OK
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "complete"
    assert out["labels"] == ["Mail", "Safari"]
    names = sorted(Path(v["path"]).name for v in out["icons"].values())
    assert names == ["01_mail.png", "02_safari.png"]
    assert all(Path(v["path"]).is_file() for v in out["icons"].values())


def test_failed_run_keeps_finished_icons(fake, tmp_path: Path, capsys) -> None:
    _queue_icon(fake, 1)
    fake.responses.append(error_response(400, "Your request was rejected by the safety system"))

    code = icon_cli.main([
        "--labels", "Mail, Safari",
        "--theme", "retro",
        "--min-interval", "0",
        "--output-dir", str(tmp_path),
    ])

    assert code == icon_cli.EXIT_FAILED
    assert [p.name for p in tmp_path.glob("*/*.png")] == ["01_mail.png"]
    assert "safety system" in capsys.readouterr().err


def test_extract_only_prints_labels(fake, tmp_path: Path, capsys) -> None:
    shot = tmp_path / "home.png"
    shot.write_bytes(png_bytes((1179, 2556)))
    fake.responses.append(chat_response("Mail, Safari, Notes"))

    code = icon_cli.main(["--image", str(shot), "--extract-only"])

    assert code == icon_cli.EXIT_OK
    assert capsys.readouterr().out.splitlines() == ["Mail", "Safari", "Notes"]
    assert len(fake.calls) == 1


def test_missing_image_file(fake, tmp_path: Path) -> None:
    code = icon_cli.main(["--image", str(tmp_path / "nope.png"), "--theme", "retro"])
    assert code == icon_cli.EXIT_CONFIG


def test_ctrl_c_keeps_finished_icons_and_reports_elapsed_time(fake, tmp_path: Path, monkeypatch, capsys) -> None:
    def interrupted(self, labels, theme):
        self.current_run = icon_core.PipelineRun(self.run_id, tuple(labels), theme)
        self.current_run.artifacts[0] = icon_core.GeneratedArtifact(self.run_id, 0, "Mail", png_bytes(), "PNG")
        time.sleep(0.2)
        raise KeyboardInterrupt

    monkeypatch.setattr(icon_core.IconPipeline, "generate_icons", interrupted)

    code = icon_cli.main([
        "--labels", "Mail, Safari",
        "--theme", "retro",
        "--output-dir", str(tmp_path),
        "--json",
    ])

    assert code == icon_cli.EXIT_CANCELLED
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "cancelled"
    assert out["duration"] >= 0.2
    assert [v["label"] for v in out["icons"].values()] == ["Mail"]
