import json
import sqlite3
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest
import requests
from click.testing import CliRunner, Result

from overcast_archive.main import cli

ResponseFactory = Callable[..., requests.Response]

_CLEAN_ENV = {
    "OVERCAST_USERNAME": None,
    "OVERCAST_PASSWORD": None,
    "ENCRYPTION_KEY": None,
}


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _archive(
    runner: CliRunner,
    tmp_path: Path,
    login_body: str,
    export_body: str,
    make_response: ResponseFactory,
) -> tuple[Result, Path]:
    db_path = tmp_path / "overcast.db"
    with (
        patch("requests.Session.post", return_value=make_response(login_body)),
        patch("requests.Session.get", return_value=make_response(export_body)),
    ):
        result = runner.invoke(
            cli,
            [
                "--auth-file",
                str(tmp_path / "auth.json"),
                "-u",
                "user@example.com",
                "-p",
                "hunter2",
                "archive",
                str(db_path),
            ],
            env=_CLEAN_ENV,
        )
    return result, db_path


def test_archive(
    runner: CliRunner,
    tmp_path: Path,
    export_document: str,
    make_response: ResponseFactory,
) -> None:
    result, db_path = _archive(
        runner, tmp_path, "<html>Podcasts</html>", export_document, make_response
    )
    assert result.exit_code == 0, result.output

    conn = sqlite3.connect(db_path)
    assert conn.execute("SELECT id FROM feeds ORDER BY id").fetchall() == [
        ("100",),
        ("200",),
    ]
    assert conn.execute("SELECT id, feed_id FROM episodes ORDER BY id").fetchall() == [
        ("5001", "100"),
        ("5002", "100"),
    ]
    conn.close()


def test_archive_invalid_credentials(
    runner: CliRunner,
    tmp_path: Path,
    export_document: str,
    make_response: ResponseFactory,
) -> None:
    result, db_path = _archive(
        runner,
        tmp_path,
        "Sorry, there was a problem looking up your Overcast account.",
        export_document,
        make_response,
    )
    assert result.exit_code == 1
    assert "authentication failed" in result.output
    assert not db_path.exists()


def test_archive_unexpected_export(
    runner: CliRunner,
    tmp_path: Path,
    make_response: ResponseFactory,
) -> None:
    result, db_path = _archive(
        runner,
        tmp_path,
        "<html>Podcasts</html>",
        "<html><body>Log In</body></html>",
        make_response,
    )
    assert result.exit_code == 1
    assert "parse failed" in result.output
    assert not db_path.exists()


def test_archive_without_credentials(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(
        cli,
        [
            "--auth-file",
            str(tmp_path / "auth.json"),
            "archive",
            str(tmp_path / "overcast.db"),
        ],
        env=_CLEAN_ENV,
    )
    assert result.exit_code == 2
    assert "No credentials provided" in result.output


def test_auth_then_archive_from_auth_file(
    runner: CliRunner,
    tmp_path: Path,
    export_document: str,
    make_response: ResponseFactory,
) -> None:
    auth_file = tmp_path / "auth.json"
    with patch("requests.Session.post", return_value=make_response("<html></html>")):
        result = runner.invoke(
            cli,
            ["--auth-file", str(auth_file), "auth"],
            input="user@example.com\nhunter2\n",
            env=_CLEAN_ENV,
        )
    assert result.exit_code == 0, result.output
    assert json.loads(auth_file.read_text()) == {
        "overcast_username": "user@example.com",
        "overcast_password": "hunter2",
    }

    db_path = tmp_path / "overcast.db"
    with (
        patch("requests.Session.post", return_value=make_response("<html></html>")),
        patch("requests.Session.get", return_value=make_response(export_document)),
    ):
        result = runner.invoke(
            cli,
            ["--auth-file", str(auth_file), "archive", str(db_path)],
            env=_CLEAN_ENV,
        )
    assert result.exit_code == 0, result.output
    assert db_path.exists()


def test_metrics(
    runner: CliRunner,
    tmp_path: Path,
    export_document: str,
    make_response: ResponseFactory,
) -> None:
    result, db_path = _archive(
        runner, tmp_path, "<html>Podcasts</html>", export_document, make_response
    )
    assert result.exit_code == 0, result.output

    metrics_path = tmp_path / "overcast.prom"
    result = runner.invoke(
        cli,
        ["metrics", str(db_path), "--metrics-filename", str(metrics_path)],
        env=_CLEAN_ENV,
    )
    assert result.exit_code == 0, result.output

    metrics = metrics_path.read_text()
    assert 'overcast_feed_count{subscribed="true"} 1.0' in metrics
    assert 'overcast_feed_count{subscribed="false"} 1.0' in metrics
    assert 'overcast_episode_count{played="true",user_deleted="false"} 1.0' in metrics
    assert 'overcast_episode_count{played="false",user_deleted="true"} 1.0' in metrics
    assert 'overcast_episode_count{played="true",user_deleted="true"} 0.0' in metrics


def test_generate_key(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["generate-key"], env=_CLEAN_ENV)
    assert result.exit_code == 0
    assert len(result.output.strip()) == 64


def test_invalid_encryption_key(runner: CliRunner) -> None:
    result = runner.invoke(
        cli, ["--encryption-key", "nope", "generate-key"], env=_CLEAN_ENV
    )
    assert result.exit_code == 2
