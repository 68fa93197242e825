from __future__ import annotations

import json
import pathlib

import pytest

import wti
from wti import JiraError

ISSUE = {
    "key": "PROJ-1",
    "fields": {"summary": "Fix it", "description": "h1. Title\n[~accountid:abc] said *hi*"},
}


class FakeClient:
    instances = []

    def __init__(self, host, user, token, timeout=wti.DEFAULT_TIMEOUT):
        self.host = host
        self.user = user
        self.token = token
        self.timeout = timeout
        FakeClient.instances.append(self)

    def get_issue(self, issue):
        if issue != "PROJ-1":
            raise JiraError(f"JIRA Request for issue {issue} returned Not Found (404)", status_code=404)
        return ISSUE

    def get_user(self, account_id):
        return {"displayName": "Ada Lovelace", "emailAddress": "ada@x.com"}


@pytest.fixture(autouse=True)
def _env(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(wti, "JiraClient", FakeClient)
    FakeClient.instances = []
    monkeypatch.setenv(wti.ENV_HOST, "https://jira.example.com")
    monkeypatch.setenv(wti.ENV_USER, "me@example.com")
    monkeypatch.setenv(wti.ENV_TOKEN, "secret")


def test_prints_title_and_description(capsys: pytest.CaptureFixture[str]) -> None:
    assert wti.main(["PROJ-1"]) == wti.EXIT_SUCCESS
    out = capsys.readouterr().out
    assert out == "PROJ-1 - Fix it\n\n# Title\nAda Lovelace (ada@x.com) said **hi**\n"


def test_no_title(capsys: pytest.CaptureFixture[str]) -> None:
    assert wti.main(["--no-title", "PROJ-1"]) == wti.EXIT_SUCCESS
    assert capsys.readouterr().out == "# Title\nAda Lovelace (ada@x.com) said **hi**\n"


def test_no_description(capsys: pytest.CaptureFixture[str]) -> None:
    assert wti.main(["PROJ-1", "--no-description"]) == wti.EXIT_SUCCESS
    assert capsys.readouterr().out == "PROJ-1 - Fix it\n\n"


def test_fetch_failure_prints_nothing(capsys: pytest.CaptureFixture[str]) -> None:
    assert wti.main(["PROJ-404"]) == wti.EXIT_FAIL
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "PROJ-404" in captured.err


def test_missing_token_is_usage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(wti.ENV_TOKEN)
    with pytest.raises(SystemExit) as excinfo:
        wti.main(["PROJ-1"])
    assert excinfo.value.code == 2


def test_placeholder_auth_field_is_rejected(tmp_path: pathlib.Path) -> None:
    auth = tmp_path / "auth.json"
    auth.write_text(json.dumps({"user": "me@example.com", "token": "**token**"}))
    with pytest.raises(SystemExit):
        wti.main(["PROJ-1"])


def test_config_and_auth_files_take_precedence(tmp_path: pathlib.Path) -> None:
    config = tmp_path / "jira.json"
    config.write_text(json.dumps({"host": "https://other.example.com", "timeout": 3}))
    auth = tmp_path / "creds.json"
    auth.write_text(json.dumps({"user": "bot@example.com", "token": "t0ken"}))
    assert wti.main(["-c", str(config), "-a", str(auth), "--no-title", "--no-description", "PROJ-1"]) == 0
    client = FakeClient.instances[-1]
    assert (client.host, client.user, client.token, client.timeout) == (
        "https://other.example.com", "bot@example.com", "t0ken", 3,
    )


def test_non_string_auth_field_is_usage_error(tmp_path: pathlib.Path) -> None:
    auth = tmp_path / "auth.json"
    auth.write_text(json.dumps({"user": "me@example.com", "token": 1234}))
    with pytest.raises(SystemExit) as excinfo:
        wti.main(["PROJ-1"])
    assert excinfo.value.code == 2
