from __future__ import annotations

import asyncio
import logging
import socket

import pytest

from fanrelay import supervisor as supervisor_module
from fanrelay.config import ListenerSpec, parse_config
from fanrelay.events import EventStream, ListenerBindFailed, ListenerStarted, ListenerStopped
from fanrelay.listener import ListenerState
from fanrelay.supervisor import Supervisor
from fanrelay.tcp import TcpListener
from fanrelay.udp import UdpListener
from tests.helpers import TIMEOUT, EventRecorder


async def test_unknown_protocol_entry_is_skipped_and_the_rest_serve(
    udp_sink, caplog: pytest.LogCaptureFixture
) -> None:
    sink = await udp_sink()
    with caplog.at_level(logging.ERROR, logger="fanrelay.config"):
        config = parse_config(
            {
                "listeners": [
                    {"protocol": "sctp", "listen_addr": "127.0.0.1:0", "targets": [sink.address]},
                    {"protocol": "udp", "listen_addr": "127.0.0.1:0", "targets": [sink.address]},
                ]
            }
        )
    assert "Unknown protocol: sctp" in caplog.text

    async with Supervisor(config) as supervisor:
        assert await asyncio.wait_for(supervisor.wait_bound(), TIMEOUT) == 1
        (listener,) = supervisor.listeners
        assert isinstance(listener, UdpListener)

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(b"still-relayed", listener.local_address)
            assert await sink.next() == b"still-relayed"


async def test_one_listener_per_spec() -> None:
    specs = [
        ListenerSpec("udp", "127.0.0.1:0"),
        ListenerSpec("tcp", "127.0.0.1:0"),
        ListenerSpec("udp", "127.0.0.1:0"),
    ]
    async with Supervisor(specs) as supervisor:
        assert await asyncio.wait_for(supervisor.wait_bound(), TIMEOUT) == 3
        kinds = [type(listener) for listener in supervisor.listeners]
        assert kinds == [UdpListener, TcpListener, UdpListener]
        assert all(listener.state is ListenerState.SERVING for listener in supervisor.listeners)


async def test_failed_bind_does_not_affect_siblings(event_stream: EventStream) -> None:
    occupied = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    occupied.bind(("127.0.0.1", 0))
    port = occupied.getsockname()[1]
    recorder = EventRecorder(event_stream, ListenerStarted, ListenerBindFailed)
    specs = [
        ListenerSpec("udp", f"127.0.0.1:{port}"),
        ListenerSpec("udp", "127.0.0.1:0"),
    ]
    try:
        async with Supervisor(specs, events=event_stream) as supervisor:
            assert await asyncio.wait_for(supervisor.wait_bound(), TIMEOUT) == 1
            failed, healthy = supervisor.listeners
            assert failed.state is ListenerState.TERMINATED
            assert healthy.state is ListenerState.SERVING
    finally:
        occupied.close()

    assert len(recorder.of(ListenerBindFailed)) == 1
    assert len(recorder.of(ListenerStarted)) == 1


async def test_run_returns_once_every_listener_failed() -> None:
    occupied = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    occupied.bind(("127.0.0.1", 0))
    occupied.listen()
    port = occupied.getsockname()[1]
    try:
        supervisor = Supervisor([ListenerSpec("tcp", f"127.0.0.1:{port}")])
        await asyncio.wait_for(supervisor.run(), TIMEOUT)
    finally:
        occupied.close()

    (listener,) = supervisor.listeners
    assert listener.state is ListenerState.TERMINATED


async def test_run_with_no_listeners_returns() -> None:
    await asyncio.wait_for(Supervisor([]).run(), TIMEOUT)


async def test_stop_terminates_running_listeners(event_stream: EventStream) -> None:
    recorder = EventRecorder(event_stream, ListenerStopped)
    supervisor = Supervisor(
        [ListenerSpec("udp", "127.0.0.1:0"), ListenerSpec("tcp", "127.0.0.1:0")],
        events=event_stream,
    )
    runner = asyncio.create_task(supervisor.run())
    await asyncio.sleep(0)
    assert await asyncio.wait_for(supervisor.wait_bound(), TIMEOUT) == 2

    await supervisor.stop()
    await asyncio.wait_for(runner, TIMEOUT)

    assert all(listener.state is ListenerState.TERMINATED for listener in supervisor.listeners)
    assert {e.protocol for e in recorder.of(ListenerStopped)} == {"udp", "tcp"}


async def test_start_twice_raises() -> None:
    async with Supervisor([ListenerSpec("udp", "127.0.0.1:0")]) as supervisor:
        with pytest.raises(RuntimeError, match="already started"):
            supervisor.start()


async def test_module_level_run() -> None:
    occupied = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    occupied.bind(("127.0.0.1", 0))
    port = occupied.getsockname()[1]
    try:
        await asyncio.wait_for(
            supervisor_module.run([ListenerSpec("udp", f"127.0.0.1:{port}")]), TIMEOUT
        )
    finally:
        occupied.close()


async def test_crashed_listener_is_logged_and_siblings_keep_serving(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    async def crash(self: UdpListener) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(UdpListener, "_serve_forever", crash)
    specs = [ListenerSpec("udp", "127.0.0.1:0"), ListenerSpec("tcp", "127.0.0.1:0")]

    with caplog.at_level(logging.ERROR, logger="fanrelay.supervisor"):
        async with Supervisor(specs) as supervisor:
            assert await asyncio.wait_for(supervisor.wait_bound(), TIMEOUT) == 2
            await asyncio.sleep(0.05)
            udp, tcp = supervisor.listeners
            assert udp.state is ListenerState.TERMINATED
            assert tcp.state is ListenerState.SERVING

    assert "UDP listener on 127.0.0.1:0 crashed" in caplog.text


async def test_malformed_listen_address_fails_only_that_listener(
    udp_sink, event_stream: EventStream
) -> None:
    sink = await udp_sink()
    recorder = EventRecorder(event_stream, ListenerBindFailed)
    config = parse_config(
        {
            "listeners": [
                {"protocol": "udp", "listen_addr": "127.0.0.1", "targets": [sink.address]},
                {"protocol": "udp", "listen_addr": "127.0.0.1:0", "targets": [sink.address]},
            ]
        }
    )

    async with Supervisor(config, events=event_stream) as supervisor:
        assert await asyncio.wait_for(supervisor.wait_bound(), TIMEOUT) == 1
        broken, healthy = supervisor.listeners
        assert broken.state is ListenerState.TERMINATED
        assert healthy.state is ListenerState.SERVING

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(b"sibling", healthy.local_address)
            assert await sink.next() == b"sibling"

    (failed,) = recorder.of(ListenerBindFailed)
    assert failed.address == "127.0.0.1"
    assert isinstance(failed.cause, ValueError)
