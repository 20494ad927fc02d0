"""Tests for record parsing, the batch driver and the CLI entry point."""
import os
import re

import pytest

import accountmatic
from accountmatic import (
    ProvisioningRecord,
    RecordParseError,
    StopFlag,
    UsageError,
    fncMain,
    fncParseRecord,
    fncReadRecords,
    fncRunBatch,
)

LINE_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} - ")


class TestParseRecord:
    def test_username_and_groups(self):
        r = fncParseRecord("alice;devs,ops", 3)
        assert r == ProvisioningRecord(username="alice", groups=("devs", "ops"), lineno=3)

    def test_whitespace_is_trimmed(self):
        r = fncParseRecord("  alice ; devs , ops  ")
        assert r.username == "alice"
        assert r.groups == ("devs", "ops")

    def test_no_groups_field(self):
        assert fncParseRecord("alice").groups == ()

    def test_empty_groups_field(self):
        r = fncParseRecord("alice;")
        assert r.groups == ()
        assert r.blank_tokens == 0

    def test_blank_tokens_skipped_and_counted(self):
        r = fncParseRecord("alice;devs,,ops,")
        assert r.groups == ("devs", "ops")
        assert r.blank_tokens == 2

    def test_duplicate_groups_collapsed(self):
        assert fncParseRecord("alice;devs,devs").groups == ("devs",)

    @pytest.mark.parametrize("line, reason", [
        (";devs", "empty username"),
        ("alice;devs;ops", "fields"),
        ("Alice;devs", "invalid username"),
        ("al ice;devs", "invalid username"),
        ("alice;de:vs", "invalid group name"),
        ("a" * 33 + ";devs", "invalid username"),
    ])
    def test_rejected(self, line, reason):
        with pytest.raises(RecordParseError, match=reason) as exc:
            fncParseRecord(line, 7)
        assert exc.value.lineno == 7

    def test_custom_name_regex(self):
        r = fncParseRecord("Alice;Devs", name_regex=r"^[A-Za-z]+$")
        assert r.username == "Alice"


class TestReadRecords:
    def test_skips_blank_comment_and_bad_lines(self, tmp_path, log, caplog):
        f = tmp_path / "users.txt"
        f.write_text("# staff\nalice;devs\n\n   \nBAD NAME;x\nbob;ops,,\ncarol\n")
        records = fncReadRecords(str(f), log)
        assert [r.username for r in records] == ["alice", "bob", "carol"]
        assert [r.lineno for r in records] == [2, 6, 7]
        assert "line 5: invalid username" in caplog.text
        assert "Line 6: ignored 2 empty group name(s) for bob" in caplog.text

    def test_missing_file_is_usage_error(self, tmp_path, log):
        with pytest.raises(UsageError):
            fncReadRecords(str(tmp_path / "nope.txt"), log)

    def test_empty_file(self, tmp_path, log):
        f = tmp_path / "empty.txt"
        f.write_text("")
        assert fncReadRecords(str(f), log) == []


class TestRunBatch:
    def test_processes_in_order_and_continues_after_failure(self, system, ctx, caplog):
        system.failing("groupadd", "broken")
        records = [
            ProvisioningRecord("alice", ("devs",)),
            ProvisioningRecord("bob", ("broken",)),
            ProvisioningRecord("carol", ()),
        ]
        report = fncRunBatch(records, ctx, source="users.txt")

        assert report.processed == 3
        assert report.created == ["alice", "bob", "carol"]
        assert report.failed == ["bob"]
        assert not report.interrupted
        created = [m[1] for m in system.mutations if m[0] == "useradd"]
        assert created == ["alice", "bob", "carol"]
        assert "Starting account provisioning from users.txt (3 record(s))" in caplog.text
        assert "Account provisioning complete: 3 processed, 3 created, 1 failed" in caplog.text
        assert "Records with errors: bob" in caplog.text

    def test_empty_batch(self, system, ctx, caplog):
        report = fncRunBatch([], ctx)
        assert report.processed == 0
        assert system.mutations == []
        assert "Starting account provisioning" in caplog.text
        assert "Account provisioning complete: 0 processed" in caplog.text

    def test_stop_between_records(self, system, ctx, caplog):
        stop = StopFlag()

        class StopAfterFirst:
            def __init__(self, inner):
                self.inner = inner

            def secure_home(self, *args):
                self.inner.secure_home(*args)
                stop(15, None)

        ctx.filesystem = StopAfterFirst(system.filesystem)
        records = [ProvisioningRecord("alice"), ProvisioningRecord("bob")]
        report = fncRunBatch(records, ctx, stop=stop)

        assert report.interrupted
        assert report.processed == 1
        assert "bob" not in system.users
        # alice finished every phase before the stop was honoured
        assert "/home/alice" in system.homes
        assert "Received SIGTERM; stopping before bob" in caplog.text
        assert "(interrupted)" in caplog.text

    def test_stop_flag_restores_handlers(self):
        import signal

        before = signal.getsignal(signal.SIGTERM)
        stop = StopFlag()
        with stop.installed():
            assert signal.getsignal(signal.SIGTERM) is stop
        assert signal.getsignal(signal.SIGTERM) is before


@pytest.fixture
def run_env(tmp_path, monkeypatch):
    """Point every path fncMain touches into tmp_path."""
    for name in ("LOG_FILE", "CRED_FILE", "LOCK_PATH", "ADMIN_REQUIRED", accountmatic.ENC_KEY_ENV):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "log" / "activity.log"))
    monkeypatch.setenv("CRED_FILE", str(tmp_path / "creds" / "credentials.csv"))
    monkeypatch.setenv("LOCK_PATH", str(tmp_path / "run" / "accountmatic.lock"))
    monkeypatch.setenv("ADMIN_REQUIRED", "false")
    monkeypatch.setattr(accountmatic, "KEY_FILE", str(tmp_path / "absent.key"))
    # fncMain sets a 077 umask for the process
    umask = os.umask(0o022)
    os.umask(umask)
    yield tmp_path
    os.umask(umask)


def main(run_env, *args):
    return fncMain(["--env-file", str(run_env / "absent.env"), *args])


class TestMain:
    def test_no_arguments_is_usage_error(self, run_env):
        assert main(run_env) == 1
        log_text = (run_env / "log" / "activity.log").read_text()
        assert "Usage: accountmatic.py <input-file>" in log_text
        assert LINE_RE.match(log_text)
        assert not (run_env / "creds").exists()
        assert not (run_env / "run").exists()

    def test_missing_input_file(self, run_env):
        assert main(run_env, str(run_env / "nope.txt")) == 1
        assert "Cannot read input file" in (run_env / "log" / "activity.log").read_text()
        assert not (run_env / "creds").exists()

    def test_empty_input_completes(self, run_env):
        users = run_env / "users.txt"
        users.write_text("")
        assert main(run_env, str(users)) == 0

        lines = (run_env / "log" / "activity.log").read_text().splitlines()
        assert all(LINE_RE.match(line) for line in lines)
        assert "Starting account provisioning" in lines[0]
        assert "Account provisioning complete: 0 processed, 0 created, 0 failed" in lines[-1]
        assert (run_env / "creds" / "credentials.csv").read_text() == ""

    def test_insecure_store_aborts(self, run_env, monkeypatch):
        users = run_env / "users.txt"
        users.write_text("alice;devs\n")
        blocker = run_env / "blocker"
        blocker.write_text("")
        monkeypatch.setenv("CRED_FILE", str(blocker / "credentials.csv"))

        assert main(run_env, str(users)) == 1
        assert "Aborting before any credential is written" in (run_env / "log" / "activity.log").read_text()

    @pytest.mark.skipif(os.geteuid() == 0, reason="root passes the privilege check")
    def test_root_required(self, run_env, monkeypatch):
        users = run_env / "users.txt"
        users.write_text("alice\n")
        monkeypatch.setenv("ADMIN_REQUIRED", "true")
        assert main(run_env, str(users)) == 1
        assert "This needs root" in (run_env / "log" / "activity.log").read_text()
        assert not (run_env / "creds").exists()

    def test_settings_warnings_reach_activity_log(self, run_env, monkeypatch):
        monkeypatch.setenv("PASSWORD_LENGTH", "8")
        monkeypatch.setenv("HOME_MODE", "0755")
        assert main(run_env) == 1
        log_text = (run_env / "log" / "activity.log").read_text()
        assert "PASSWORD_LENGTH=8 is too short; using 16" in log_text
        assert "HOME_MODE=755 grants group/other access; using 700" in log_text

    def test_env_file_values_apply(self, run_env, monkeypatch):
        monkeypatch.delenv("LOG_FILE")
        env_file = run_env / "accountmatic.env"
        env_file.write_text(f"LOG_FILE='{run_env / 'from-env.log'}'\n")
        monkeypatch.setattr(os, "environ", dict(os.environ))
        assert fncMain(["--env-file", str(env_file)]) == 1
        assert "Usage:" in (run_env / "from-env.log").read_text()
