"""Tests for the run lifecycle: discovery gate, fan-out, config diff."""

import threading

import pytest

from ftp_ingest.config import FtpSourceConfig
from ftp_ingest.errors import ConfigurationError, DiscoveryError, TransferError
from ftp_ingest.plugin import IngestPlan, cleanup, open_task, resume, run, transaction
from ftp_ingest.provider import SingleFileProvider
from ftp_ingest.resilience import ReopenPolicy


def _config(**options):
    options.setdefault("host", "ftp.example.com")
    options.setdefault("path_prefix", "/in/sample_")
    return FtpSourceConfig(**options)


class TestTransaction:
    def test_plan_has_one_task_per_file(self, ftp_server, caplog):
        caplog.set_level("INFO", logger="ftp_ingest.plugin")
        plan = transaction(_config(), session_factory=ftp_server.session_factory)
        assert plan.task_count == 3
        assert plan.files[0] == "/in/sample_01.csv"
        assert "Using files" in caplog.text
        # the discovery session is closed
        assert all(client.closed for client in ftp_server.clients)

    def test_discovery_failure_propagates(self, ftp_server):
        with pytest.raises(DiscoveryError):
            transaction(_config(path_prefix="/nope/x"), session_factory=ftp_server.session_factory)


class TestResume:
    def test_emits_max_selected_path(self):
        plan = IngestPlan(_config(), ("/in/b", "/in/c", "/in/a"))
        assert resume(plan) == {"last_path": "/in/c"}

    def test_empty_run_keeps_prior(self):
        plan = IngestPlan(_config(last_path="/in/prior"), ())
        assert resume(plan) == {"last_path": "/in/prior"}

    def test_empty_run_without_prior_is_empty_diff(self):
        assert resume(IngestPlan(_config(), ())) == {}

    def test_not_incremental_is_empty_diff(self):
        assert resume(IngestPlan(_config(incremental=False), ("/in/a",))) == {}

    def test_cleanup_is_a_no_op(self):
        assert cleanup(IngestPlan(_config(), ("/in/a",))) is None


class TestOpenTask:
    def test_provider_per_index(self, ftp_server):
        plan = IngestPlan(_config(), ("/in/sample_01.csv", "/in/sample_02.csv"))
        provider = open_task(plan, 1, session_factory=ftp_server.session_factory)
        assert isinstance(provider, SingleFileProvider)
        with provider:
            assert provider.next().read() == b"id,name\n2,beta\n"


class TestRun:
    """Tests for in-process runs against the fake server."""

    def test_ingests_every_file_and_emits_watermark(self, ftp_server):
        result = run(
            _config(),
            lambda source: (source.hint, source.read()),
            parallelism=2,
            session_factory=ftp_server.session_factory,
        )
        assert result.files == (
            "/in/sample_01.csv",
            "/in/sample_02.csv",
            "/in/sample_dir/sample_03.csv",
        )
        assert result.outputs == [
            ("/in/sample_01.csv", b"id,name\n1,alpha\n"),
            ("/in/sample_02.csv", b"id,name\n2,beta\n"),
            ("/in/sample_dir/sample_03.csv", b"id,name\n4,delta\n"),
        ]
        assert result.config_diff == {"last_path": "/in/sample_dir/sample_03.csv"}
        assert result.last_path == "/in/sample_dir/sample_03.csv"
        # one discovery session plus one per work unit, all closed
        assert len(ftp_server.clients) == 4
        assert all(client.closed for client in ftp_server.clients)

    def test_units_run_in_parallel(self, ftp_server):
        barrier = threading.Barrier(3, timeout=5)

        def consumer(source):
            barrier.wait()
            return source.read()

        result = run(
            _config(), consumer, parallelism=3, session_factory=ftp_server.session_factory
        )
        assert len(result.outputs) == 3

    def test_second_run_selects_only_new_files(self, ftp_server):
        first = run(_config(), lambda s: s.read(), session_factory=ftp_server.session_factory)
        ftp_server.add_file("/in/sample_dir/sample_04.csv", b"new\n")

        second = run(
            _config(last_path=first.last_path),
            lambda s: s.read(),
            session_factory=ftp_server.session_factory,
        )
        assert second.files == ("/in/sample_dir/sample_04.csv",)
        assert second.outputs == [b"new\n"]

    def test_nothing_new_keeps_watermark(self, ftp_server):
        result = run(
            _config(last_path="/in/zzz"), lambda s: s.read(), session_factory=ftp_server.session_factory
        )
        assert result.files == ()
        assert result.config_diff == {"last_path": "/in/zzz"}

    def test_stop_when_file_not_found(self, ftp_server):
        with pytest.raises(ConfigurationError):
            run(
                _config(path_match_pattern="non_exist", stop_when_file_not_found=True),
                lambda s: s.read(),
                session_factory=ftp_server.session_factory,
            )

    def test_failed_unit_raises_after_all_finish(self, ftp_server):
        ftp_server.transfer_failures["/in/sample_02.csv"] = [3]
        consumed = []

        def consumer(source):
            data = source.read()
            consumed.append(source.hint)
            return data

        with pytest.raises(TransferError):
            run(
                _config(),
                consumer,
                session_factory=ftp_server.session_factory,
                reopen_policy=ReopenPolicy.none(),
            )
        assert sorted(consumed) == ["/in/sample_01.csv", "/in/sample_dir/sample_03.csv"]
        assert all(client.closed for client in ftp_server.clients)

    def test_transient_failure_is_resumed(self, ftp_server):
        ftp_server.transfer_failures["/in/sample_02.csv"] = [3]
        result = run(
            _config(),
            lambda s: s.read(),
            session_factory=ftp_server.session_factory,
            sleep=lambda seconds: None,
        )
        assert result.outputs[1] == b"id,name\n2,beta\n"
