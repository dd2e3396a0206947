import json
import os
import shutil

import pytest

import mcp_runtime_bootstrap
from mcp_runtime_bootstrap import ShellExecutor, main

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs a POSIX shell")


def _args(tmp_path, *extra):
    return [
        "--config", str(tmp_path / "mcp-servers.txt"),
        "--cache-file", str(tmp_path / "cache" / ".mcp-hash"),
        "--env-file", str(tmp_path / ".env"),
        "--shell", "/bin/sh",
        *extra,
    ]


def test_shell_executor_reports_exit_codes():
    executor = ShellExecutor(shell="/bin/sh")

    assert executor.run("true", {}).success is True
    outcome = executor.run("exit 3", {})
    assert outcome.success is False
    assert outcome.exit_code == 3


def test_shell_executor_passes_environment(tmp_path):
    target = tmp_path / "out.txt"
    executor = ShellExecutor(shell="/bin/sh")

    executor.run(f'printf %s "$API_KEY" > "{target}"', {"API_KEY": "k1"})

    assert target.read_text() == "k1"


def test_shell_executor_missing_shell_is_a_failure(tmp_path):
    executor = ShellExecutor(shell=str(tmp_path / "no-such-shell"))

    outcome = executor.run("true", {})

    assert outcome.success is False
    assert outcome.exit_code is None
    assert outcome.error


def test_shell_executor_timeout_is_a_failure():
    executor = ShellExecutor(shell="/bin/sh", timeout=0.2)

    outcome = executor.run("sleep 5", {"PATH": os.environ.get("PATH", "/usr/bin:/bin")})

    assert outcome.success is False
    assert "timed out" in outcome.error


def test_detect_shell_prefers_explicit_choice():
    assert mcp_runtime_bootstrap.detect_shell("/bin/zsh") == "/bin/zsh"
    assert mcp_runtime_bootstrap.detect_shell(None) == (shutil.which("bash") or "/bin/sh")


def test_main_without_config_exits_zero(tmp_path, capsys):
    assert main(_args(tmp_path, "--json")) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["status"] == "no_config"
    assert not (tmp_path / "cache" / ".mcp-hash").exists()


def test_main_runs_directives_then_skips_on_second_start(tmp_path, capsys):
    marker = tmp_path / "installed.log"
    (tmp_path / "mcp-servers.txt").write_text(
        f"echo first >> {marker}\n"
        "false\n"
        f"echo third >> {marker}\n",
        encoding="utf-8",
    )

    assert main(_args(tmp_path, "--json")) == 0
    first = json.loads(capsys.readouterr().out)

    assert marker.read_text().split() == ["first", "third"]
    assert [item["status"] for item in first["directives"]] == ["installed", "failed", "installed"]
    assert first["cached"] is True
    assert (tmp_path / "cache" / ".mcp-hash").read_text().strip() == first["fingerprint"]

    assert main(_args(tmp_path, "--json")) == 0
    second = json.loads(capsys.readouterr().out)

    assert second["status"] == "unchanged"
    assert marker.read_text().split() == ["first", "third"]


def test_main_force_reinstalls(tmp_path, capsys):
    marker = tmp_path / "installed.log"
    (tmp_path / "mcp-servers.txt").write_text(f"echo run >> {marker}\n", encoding="utf-8")

    assert main(_args(tmp_path)) == 0
    assert main(_args(tmp_path, "--force")) == 0

    assert marker.read_text().split() == ["run", "run"]


def test_main_uses_env_file_for_structured_payloads(tmp_path, capsys):
    marker = tmp_path / "payload.json"
    (tmp_path / ".env").write_text("TOKEN=ab-cd\n", encoding="utf-8")
    (tmp_path / "mcp-servers.txt").write_text(
        f"printf %s '{{\"key\":\"${{TOKEN}}\"}}' > {marker} # add-json\n",
        encoding="utf-8",
    )

    assert main(_args(tmp_path)) == 0

    assert json.loads(marker.read_text()) == {"key": "ab-cd"}


def test_main_treats_config_directory_as_absent(tmp_path):
    (tmp_path / "mcp-servers.txt").mkdir()

    assert main(_args(tmp_path)) == 0


def test_main_unreadable_config_exits_non_zero(tmp_path, monkeypatch):
    config = tmp_path / "mcp-servers.txt"
    config.write_text("echo hi\n", encoding="utf-8")

    def _refuse(self):
        raise PermissionError("denied")

    monkeypatch.setattr(type(config), "read_bytes", _refuse)

    assert main(_args(tmp_path)) == 1


def test_main_missing_envsubst_exits_non_zero(tmp_path, monkeypatch):
    (tmp_path / "mcp-servers.txt").write_text(
        "echo ${API_KEY}\n", encoding="utf-8"
    )
    (tmp_path / ".env").write_text("API_KEY=k\n", encoding="utf-8")
    monkeypatch.setattr(mcp_runtime_bootstrap.shutil, "which", lambda name: None)

    assert main(_args(tmp_path)) == 1
    assert not (tmp_path / "cache" / ".mcp-hash").exists()


def test_main_unwritable_cache_still_exits_zero(tmp_path, capsys):
    marker = tmp_path / "installed.log"
    (tmp_path / "mcp-servers.txt").write_text(f"echo ok >> {marker}\n", encoding="utf-8")
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    args = _args(tmp_path, "--json")
    args[args.index("--cache-file") + 1] = str(blocker / ".mcp-hash")

    assert main(args) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["status"] == "installed"
    assert report["cached"] is False
    assert marker.read_text().split() == ["ok"]


def test_timeout_default_is_parsed_from_environment_value(tmp_path, monkeypatch):
    monkeypatch.setattr(mcp_runtime_bootstrap, "DEFAULT_TIMEOUT", "7")

    args = mcp_runtime_bootstrap._build_parser().parse_args([])

    assert args.timeout == 7


def test_bad_timeout_default_is_reported_by_argparse(tmp_path, monkeypatch):
    monkeypatch.setattr(mcp_runtime_bootstrap, "DEFAULT_TIMEOUT", "soon")

    with pytest.raises(SystemExit) as excinfo:
        main(_args(tmp_path))

    assert excinfo.value.code == 2
