import asyncio
import logging

import pytest
from conftest import FakeTransport, make_peer

from tailrun.config import Config
from tailrun.executor import Dispatcher, PeerStatus, log_file_stem
from tailrun.inventory import Peer


def statuses(states):
    return {state.peer.hostname: state.status for state in states.values()}


class TestSelection:
    @pytest.mark.asyncio
    async def test_concrete_scenario(self):
        peers = [
            make_peer("a", addresses=["10.0.0.1"], online=True, tags=["web"]),
            make_peer("b", addresses=[], online=True, tags=["web"]),
            make_peer("c", addresses=["10.0.0.3"], online=False, tags=["web"]),
        ]
        transport = FakeTransport()
        dispatcher = Dispatcher(Config(tag="web"), transport)

        states = await dispatcher.run_all(peers)

        assert statuses(states) == {"a": PeerStatus.SUCCESS, "b": PeerStatus.FAILED}
        assert transport.calls == [("root@10.0.0.1", "echo Hello from $HOST")]
        assert "no addresses" in states["nodekey:b"].error_message
        assert dispatcher.started == dispatcher.completed == 2

    @pytest.mark.asyncio
    async def test_dispatches_each_matching_peer_once(self):
        peers = [
            make_peer(f"p{i}", addresses=[f"10.0.1.{i}"], online=i % 3 != 0,
                      tags=["web"] if i % 2 else ["db"])
            for i in range(12)
        ]
        transport = FakeTransport()

        await Dispatcher(Config(tag="web"), transport).run_all(peers)

        expected = sorted(
            f"root@{p.addresses[0]}" for p in peers if p.online and "web" in p.tags
        )
        assert sorted(target for target, _ in transport.calls) == expected

    @pytest.mark.asyncio
    async def test_empty_tag_dispatches_all_online(self):
        peers = [make_peer("a"), make_peer("b", online=False), make_peer("c")]
        states = await Dispatcher(Config(), FakeTransport()).run_all(peers)
        assert set(statuses(states)) == {"a", "c"}

    @pytest.mark.asyncio
    async def test_offline_peer_never_dispatched(self):
        transport = FakeTransport()
        peers = [make_peer("a", online=False, tags=["web"])]

        states = await Dispatcher(Config(tag="web"), transport).run_all(peers)

        assert states == {}
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_empty_inventory(self, caplog):
        caplog.set_level(logging.INFO, logger="tailrun")
        dispatcher = Dispatcher(Config(), FakeTransport())

        states = await dispatcher.run_all([])

        assert states == {}
        assert dispatcher.completed == 0
        assert not any(hasattr(r, "peer") for r in caplog.records)


class TestJoinBarrier:
    @pytest.mark.asyncio
    async def test_waits_for_slow_tasks(self):
        peers = [
            make_peer(f"p{i}", addresses=[f"10.0.0.{i}"]) for i in range(1, 6)
        ]
        delays = {f"10.0.0.{i}": 0.01 * (6 - i) for i in range(1, 6)}
        transport = FakeTransport(delays=delays)
        dispatcher = Dispatcher(Config(), transport)

        states = await dispatcher.run_all(peers)

        assert dispatcher.completed == len(peers)
        assert all(s.status == PeerStatus.SUCCESS for s in states.values())
        # unbounded: every task was in flight at once
        assert transport.max_active == len(peers)

    @pytest.mark.asyncio
    async def test_not_released_while_a_task_is_running(self):
        gate = asyncio.Event()

        class GatedTransport(FakeTransport):
            async def run(self, target, command, on_connect=None):
                if target.endswith("10.0.0.2"):
                    await gate.wait()
                return await super().run(target, command, on_connect)

        peers = [
            make_peer("fast", addresses=["10.0.0.1"]),
            make_peer("slow", addresses=["10.0.0.2"]),
        ]
        dispatcher = Dispatcher(Config(), GatedTransport())
        run = asyncio.ensure_future(dispatcher.run_all(peers))

        for _ in range(10):
            await asyncio.sleep(0)
        assert not run.done()
        assert dispatcher.completed == 1

        gate.set()
        await run
        assert dispatcher.completed == 2

    @pytest.mark.asyncio
    async def test_failures_counted_once(self):
        peers = [
            make_peer("ok", addresses=["10.0.0.1"]),
            make_peer("refused", addresses=["10.0.0.2"]),
            make_peer("nonzero", addresses=["10.0.0.3"]),
            make_peer("noaddr", addresses=[]),
        ]
        transport = FakeTransport(
            errors={"10.0.0.2": ConnectionRefusedError("refused")},
            exit_statuses={"10.0.0.3": 1},
        )
        dispatcher = Dispatcher(Config(), transport)

        states = await dispatcher.run_all(peers)

        assert dispatcher.started == dispatcher.completed == 4
        assert statuses(states) == {
            "ok": PeerStatus.SUCCESS,
            "refused": PeerStatus.FAILED,
            "nonzero": PeerStatus.FAILED,
            "noaddr": PeerStatus.FAILED,
        }


class TestIsolation:
    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_its_peer(self, caplog):
        peers = [
            make_peer("bad", addresses=["10.0.0.1"]),
            make_peer("good", addresses=["10.0.0.2"]),
        ]
        transport = FakeTransport(
            errors={"10.0.0.1": RuntimeError("bug")},
            delays={"10.0.0.2": 0.01},
        )
        dispatcher = Dispatcher(Config(), transport)

        states = await dispatcher.run_all(peers)

        assert statuses(states) == {"bad": PeerStatus.FAILED, "good": PeerStatus.SUCCESS}
        assert "bug" in states["nodekey:bad"].error_message
        assert dispatcher.completed == 2
        assert any("Unexpected error" in r.getMessage() for r in caplog.records)


class TestConcurrencyLimit:
    @pytest.mark.asyncio
    async def test_semaphore_caps_in_flight_tasks(self):
        peers = [make_peer(f"p{i}", addresses=[f"10.0.0.{i}"]) for i in range(1, 9)]
        transport = FakeTransport(delays={f"10.0.0.{i}": 0.01 for i in range(1, 9)})
        dispatcher = Dispatcher(Config(max_concurrency=3), transport)

        states = await dispatcher.run_all(peers)

        assert transport.max_active == 3
        assert dispatcher.completed == 8
        assert all(s.status == PeerStatus.SUCCESS for s in states.values())


class TestReporting:
    @pytest.mark.asyncio
    async def test_one_report_per_peer(self, caplog):
        caplog.set_level(logging.INFO, logger="tailrun")
        peers = [
            make_peer("a", addresses=["10.0.0.1"]),
            make_peer("b", addresses=[]),
            make_peer("c", addresses=["10.0.0.3"]),
        ]
        transport = FakeTransport(
            outputs={"10.0.0.1": "hi from a\n"},
            errors={"10.0.0.3": ConnectionRefusedError("refused")},
        )

        await Dispatcher(Config(), transport).run_all(peers)

        by_peer = {}
        for record in caplog.records:
            if hasattr(record, "peer"):
                by_peer.setdefault(record.peer, []).append(record)

        assert any("hi from a" in r.getMessage() for r in by_peer["a"])
        assert [r.levelno for r in by_peer["b"]] == [logging.WARNING]
        assert logging.ERROR in [r.levelno for r in by_peer["c"]]

    @pytest.mark.asyncio
    async def test_callbacks_and_log_files(self, tmp_path):
        outputs, status_changes = [], []
        peers = [make_peer("a", addresses=["10.0.0.1"])]
        transport = FakeTransport(outputs={"10.0.0.1": "line1\nline2\n"})
        dispatcher = Dispatcher(
            Config(log_dir=tmp_path),
            transport,
            on_output=lambda peer, line: outputs.append((peer.hostname, line)),
            on_status=lambda peer, status: status_changes.append(status),
        )

        states = await dispatcher.run_all(peers)

        assert ("a", "line1") in outputs and ("a", "line2") in outputs
        assert status_changes == [
            PeerStatus.CONNECTING,
            PeerStatus.RUNNING,
            PeerStatus.SUCCESS,
        ]
        log_file = states["nodekey:a"].log_file
        assert log_file is not None and log_file.parent.parent == tmp_path
        assert log_file.read_text().splitlines()[-2:] == ["line1", "line2"]

    @pytest.mark.asyncio
    async def test_no_log_files_when_disabled(self, tmp_path):
        dispatcher = Dispatcher(
            Config(log_dir=tmp_path), FakeTransport(), enable_logging=False
        )
        states = await dispatcher.run_all([make_peer("a")])
        assert states["nodekey:a"].log_file is None
        assert list(tmp_path.iterdir()) == []


class TestStatusLifecycle:
    @pytest.mark.asyncio
    async def test_no_address_goes_straight_to_failed(self):
        status_changes = []
        dispatcher = Dispatcher(
            Config(),
            FakeTransport(),
            on_status=lambda peer, status: status_changes.append(status),
        )
        await dispatcher.run_all([make_peer("b", addresses=[])])
        assert status_changes == [PeerStatus.FAILED]

    @pytest.mark.asyncio
    async def test_connection_failure_never_reaches_running(self):
        status_changes = []
        transport = FakeTransport(errors={"10.0.0.1": ConnectionRefusedError("refused")})
        dispatcher = Dispatcher(
            Config(),
            transport,
            on_status=lambda peer, status: status_changes.append(status),
        )
        await dispatcher.run_all([make_peer("a")])
        assert status_changes == [PeerStatus.CONNECTING, PeerStatus.FAILED]


class TestDuplicatePeers:
    @pytest.mark.asyncio
    async def test_keyless_peers_sharing_hostname_both_dispatched(self):
        peers = [
            Peer("web", ("10.0.0.1",), True),
            Peer("web", ("10.0.0.2",), True),
        ]
        transport = FakeTransport()
        dispatcher = Dispatcher(Config(), transport)

        states = await dispatcher.run_all(peers)

        assert sorted(target for target, _ in transport.calls) == [
            "root@10.0.0.1",
            "root@10.0.0.2",
        ]
        assert set(states) == {"web", "web#2"}
        assert dispatcher.completed == 2

    @pytest.mark.asyncio
    async def test_shared_hostname_gets_separate_log_files(self, tmp_path):
        peers = [
            Peer("ubuntu", ("10.0.0.1",), True, key="k1"),
            Peer("ubuntu", ("10.0.0.2",), True, key="k2"),
        ]
        dispatcher = Dispatcher(
            Config(log_dir=tmp_path),
            FakeTransport(outputs={"10.0.0.1": "one\n", "10.0.0.2": "two\n"}),
        )

        states = await dispatcher.run_all(peers)

        first, second = states["k1"].log_file, states["k2"].log_file
        assert first.name == "ubuntu.log"
        assert second.name == "ubuntu-2.log"
        assert "one" in first.read_text() and "two" not in first.read_text()
        assert "two" in second.read_text()


class TestLogFileFailures:
    def test_log_file_stem_is_filesystem_safe(self):
        assert log_file_stem(Peer("web/1")) == "web_1"
        assert log_file_stem(Peer("..")) == "peer"
        assert log_file_stem(Peer("db-1.example")) == "db-1.example"

    @pytest.mark.asyncio
    async def test_hostname_with_slash(self, tmp_path):
        peers = [
            Peer("web/1", ("10.0.0.1",), True, key="k1"),
            Peer("ok", ("10.0.0.2",), True, key="k2"),
        ]
        dispatcher = Dispatcher(Config(log_dir=tmp_path), FakeTransport())

        states = await dispatcher.run_all(peers)

        assert statuses(states) == {"web/1": PeerStatus.SUCCESS, "ok": PeerStatus.SUCCESS}
        assert states["k1"].log_file.name == "web_1.log"
        assert states["k1"].log_file.exists()

    @pytest.mark.asyncio
    async def test_unwritable_log_file_does_not_fail_peer(self, tmp_path, caplog):
        class BlockedLogDispatcher(Dispatcher):
            def _prepare(self, selected):
                states = super()._prepare(selected)
                for state in states:
                    state.log_file.mkdir()
                return states

        dispatcher = BlockedLogDispatcher(Config(log_dir=tmp_path), FakeTransport())

        states = await dispatcher.run_all([make_peer("a")])

        state = states["nodekey:a"]
        assert state.status == PeerStatus.SUCCESS
        assert state.log_file is None
        assert any("Cannot write log file" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_raising_callback_does_not_escape(self, caplog):
        def broken(peer, line):
            raise RuntimeError("display gone")

        peers = [make_peer("a", addresses=["10.0.0.1"]), make_peer("b", addresses=["10.0.0.2"])]
        dispatcher = Dispatcher(Config(), FakeTransport(), on_output=broken)

        states = await dispatcher.run_all(peers)

        assert statuses(states) == {"a": PeerStatus.FAILED, "b": PeerStatus.FAILED}
        assert dispatcher.completed == 2
        assert any("Could not report failure" in r.getMessage() for r in caplog.records)


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_nonzero_exit_output_logged_at_error(self, caplog):
        transport = FakeTransport(
            outputs={"10.0.0.1": "disk full\n"}, exit_statuses={"10.0.0.1": 1}
        )

        states = await Dispatcher(Config(), transport).run_all([make_peer("a")])

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "exited with status 1" in errors[0].getMessage()
        assert "disk full" in errors[0].getMessage()
        assert "disk full" in states["nodekey:a"].output_lines
