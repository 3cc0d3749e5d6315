"""End-to-end tests for the nodeward CLI.

Host collaborators are injected through the click context object:
runner, supervisor, source, http_client, sleep and kill.
"""

import json
from pathlib import Path
from typing import Any, Dict

import httpx
import yaml
from click.testing import CliRunner

from nodeward.cli.main import cli
from nodeward.core.shell import CommandResult
from nodeward.provision.markers import MarkerStore

from conftest import FakeRunner, FakeSupervisor, step_body


def _write_config(tmp_path: Path, data: Dict[str, Any]) -> Path:
    path = tmp_path / "nodeward.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def _http(status: int) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(status)))


def _invoke(args, **obj):
    obj.setdefault("sleep", lambda s: None)
    return CliRunner().invoke(cli, args, obj=obj, catch_exceptions=False)


# -------------------------
# provision
# -------------------------


class TestProvision:
    def test_fresh_run(self, config_file, runner, supervisor, source):
        result = _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)

        assert result.exit_code == 0, result.output
        assert "[01] alpha running..." in result.output
        assert "[03] gamma done" in result.output
        assert "Provisioning complete: 3 executed, 0 skipped." in result.output

    def test_rerun_skips_everything(self, config_file, runner, supervisor, source):
        _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)
        result = _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)

        assert result.exit_code == 0
        assert "[02] beta already done, skipping" in result.output
        assert "0 executed, 3 skipped" in result.output

    def test_failure_reports_resume_command(self, config_file, config, supervisor, source):
        source.bodies["beta"] = step_body("beta", [{"type": "run", "command": ["apt-get", "install", "-y", "docker"]}])
        runner = FakeRunner().on(["apt-get"], CommandResult(argv=[], returncode=100, stderr="E: broken packages"))

        result = _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)

        assert result.exit_code == 1
        assert "[02] beta FAILED" in result.output
        assert "Provisioning halted: Step 'beta' failed" in result.output
        assert "E: broken packages" in result.output
        assert f"resume with: nodeward provision --config {config_file}" in result.output
        assert MarkerStore(config.markers_dir).has("alpha")

    def test_undecodable_cache_is_refetched(self, config_file, config, runner, supervisor, source):
        config.cache_dir.mkdir(parents=True)
        (config.cache_dir / "alpha.yaml").write_bytes(b"\xff\xfe not utf8")

        result = _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)

        assert result.exit_code == 0, result.output
        assert "[01] alpha done" in result.output
        assert (config.cache_dir / "alpha.yaml").read_text() == source.bodies["alpha"]

    def test_host_error_reports_resume_command(self, config_file, config, supervisor, source):
        def denied(argv):
            raise PermissionError(13, "Permission denied")

        source.bodies["beta"] = step_body("beta", [{"type": "run", "command": ["install", "-d", "/opt/x"]}])
        runner = FakeRunner().on(["install"], denied)

        result = _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)

        assert result.exit_code == 1
        assert "Permission denied" in result.output
        assert f"Logs: {config.run_log_path}" in result.output
        assert f"resume with: nodeward provision --config {config_file}" in result.output

    def test_invalid_config(self, tmp_path, config_dict):
        config_dict["health"]["threshold"] = 9
        path = _write_config(tmp_path, config_dict)

        result = _invoke(["provision", "-c", str(path)])
        assert result.exit_code == 1
        assert "Configuration errors:" in result.output
        assert "health -> threshold" in result.output

    def test_missing_config_file(self, tmp_path):
        result = _invoke(["provision", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_config_not_a_mapping(self, tmp_path):
        path = tmp_path / "nodeward.yaml"
        path.write_text("- provision\n")

        result = _invoke(["unit", "-c", str(path)])
        assert result.exit_code == 1
        assert "must contain a mapping" in result.output


# -------------------------
# markers
# -------------------------


class TestMarkers:
    def test_list(self, config_file, config):
        MarkerStore(config.markers_dir).set("alpha", fingerprint="f" * 64)
        result = _invoke(["markers", "list", "-c", str(config_file)])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].startswith("[01] alpha") and "done" in lines[0]
        assert lines[1].startswith("[02] beta") and lines[1].endswith("pending")

    def test_list_shows_unknown_markers(self, config_file, config):
        MarkerStore(config.markers_dir).set("retired_step")
        result = _invoke(["markers", "list", "-c", str(config_file)])
        assert "retired_step" in result.output
        assert "(not in step order)" in result.output

    def test_clear(self, config_file, config):
        store = MarkerStore(config.markers_dir)
        store.set("beta")

        result = _invoke(["markers", "clear", "beta", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "Cleared marker for 'beta'" in result.output
        assert not store.has("beta")

        again = _invoke(["markers", "clear", "beta", "-c", str(config_file)])
        assert "No marker for 'beta'." in again.output

    def test_clear_rejects_bad_id(self, config_file):
        result = _invoke(["markers", "clear", "../etc/passwd", "-c", str(config_file)])
        assert result.exit_code == 1
        assert "Invalid step id" in result.output


# -------------------------
# check
# -------------------------


class TestCheck:
    def test_healthy(self, config_file, runner, supervisor):
        result = _invoke(["check", "-c", str(config_file)], runner=runner, supervisor=supervisor, http_client=_http(200))

        assert result.exit_code == 0
        assert "Health: healthy (score 3/3)" in result.output
        assert supervisor.restarts() == 0

    def test_unhealthy_without_autorestart(self, config_file, runner):
        supervisor = FakeSupervisor(active=False, pid=0)
        result = _invoke(["check", "-c", str(config_file)], runner=runner, supervisor=supervisor, http_client=_http(503))

        assert result.exit_code == 2
        assert "Health: unhealthy (score 0/3)" in result.output
        assert "no remediation requested" in result.output
        assert supervisor.restarts() == 0

    def test_autorestart_recovers(self, config_file, runner):
        supervisor = FakeSupervisor(active=False, pid=0)
        result = _invoke(
            ["check", "--autorestart", "-c", str(config_file)],
            runner=runner,
            supervisor=supervisor,
            http_client=_http(503),
        )

        assert result.exit_code == 0, result.output
        assert "Restarting demos-node.service..." in result.output
        assert "healthy after restart" in result.output
        assert supervisor.restarts() == 1

    def test_autorestart_still_unhealthy(self, tmp_path, config_dict, runner):
        config_dict["health"].update({"settle_seconds": 0, "verify_timeout": 0})
        path = _write_config(tmp_path, config_dict)
        supervisor = FakeSupervisor(active=False, pid=0)
        supervisor.after_restart = [(False, 0)]

        result = _invoke(
            ["check", "--autorestart", "-c", str(path)],
            runner=runner,
            supervisor=supervisor,
            http_client=_http(503),
        )

        assert result.exit_code == 2
        assert "still unhealthy" in result.output
        assert supervisor.restarts() == 1

    def test_forced_restart(self, config_file, runner, supervisor):
        result = _invoke(
            ["check", "--restart", "-c", str(config_file)],
            runner=runner,
            supervisor=supervisor,
            http_client=_http(200),
        )
        assert result.exit_code == 0
        assert supervisor.restarts() == 1

    def test_status_only(self, config_file, runner, supervisor):
        result = _invoke(["check", "--status", "-c", str(config_file)], runner=runner, supervisor=supervisor)

        assert result.exit_code == 0
        assert "active (running)" in result.output
        assert "Health:" not in result.output

    def test_logs_and_health(self, config_file, runner, supervisor):
        result = _invoke(
            ["check", "--logs", "3", "--health", "-c", str(config_file)],
            runner=runner,
            supervisor=supervisor,
            http_client=_http(200),
        )
        assert "log line 2" in result.output
        assert "Health: healthy" in result.output

    def test_samples_written_to_health_log(self, config_file, config, runner, supervisor):
        _invoke(["check", "-c", str(config_file)], runner=runner, supervisor=supervisor, http_client=_http(200))
        lines = config.health_log_path.read_text().splitlines()
        assert json.loads(lines[0])["category"] == "health"


# -------------------------
# stop
# -------------------------


class TestStop:
    def test_stop_and_kill_strays(self, config_file, runner):
        supervisor = FakeSupervisor()
        supervisor.pid_sequence = [4242]
        supervisor.pid = 0
        runner.on(["pgrep"], CommandResult(argv=[], returncode=0, stdout="555\n"))
        sent = []

        result = _invoke(
            ["stop", "-c", str(config_file)],
            runner=runner,
            supervisor=supervisor,
            kill=lambda pid, sig: sent.append((pid, sig)),
        )

        assert result.exit_code == 0, result.output
        assert "stray processes: 555" in result.output
        assert "Stopped." in result.output
        assert "stop" in supervisor.calls
        assert sent[0][0] == 555

    def test_process_survives(self, config_file, runner):
        supervisor = FakeSupervisor()
        runner.on(["pgrep"], 1)

        result = _invoke(["stop", "--wait", "2", "-c", str(config_file)], runner=runner, supervisor=supervisor)

        assert result.exit_code == 2
        assert "main process still present after 2s" in result.output


# -------------------------
# unit / logs / misc
# -------------------------


class TestMisc:
    def test_unit(self, config_file, config):
        result = _invoke(["unit", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "[Service]" in result.output
        assert f'Environment="BUN_INSTALL={config.service.install_root}"' in result.output

    def test_logs_empty(self, config_file):
        result = _invoke(["logs", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "No entries" in result.output

    def test_logs_after_run(self, config_file, runner, supervisor, source):
        _invoke(["provision", "-c", str(config_file)], runner=runner, supervisor=supervisor, source=source)

        result = _invoke(["logs", "--category", "run", "-c", str(config_file)])
        assert "run/complete" in result.output.splitlines()[0]

        raw = _invoke(["logs", "--json", "-n", "1", "-c", str(config_file)])
        assert len(raw.output.splitlines()) == 1
        json.loads(raw.output)

    def test_logs_prune(self, tmp_path, config_dict):
        config_dict["audit"]["retention_days"] = 30
        path = _write_config(tmp_path, config_dict)
        run_log = tmp_path / "state" / "run.jsonl"
        run_log.parent.mkdir(parents=True)
        run_log.write_text(
            json.dumps({"ts": "2000-01-01T00:00:00", "category": "run", "action": "start"}) + "\n"
            + json.dumps({"ts": "2999-01-01T00:00:00", "category": "run", "action": "complete"}) + "\n"
        )

        result = _invoke(["logs", "--prune", "-c", str(path)])

        assert result.exit_code == 0, result.output
        assert f"Pruned 1 entries from {run_log}" in result.output
        assert len(run_log.read_text().splitlines()) == 1

    def test_logs_prune_disabled(self, config_file):
        result = _invoke(["logs", "--prune", "-c", str(config_file)])
        assert "nothing pruned" in result.output

    def test_version(self):
        result = _invoke(["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_usage_error_exits_1(self):
        result = _invoke(["check", "--bogus"])
        assert result.exit_code == 1
