import asyncio
import os
import random

from secure_proxy.target import resolve_connect_target
from secure_proxy.tunnel import TunnelSession, TunnelState, relay_bidirectional

from .helpers import TOKENS, basic, free_port, make_config, open_tunnel, read_response, running_proxy, tcp_server

TOKEN_HDR = f"X-Proxy-Token: {TOKENS['alice']}\r\n"


async def echo(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await r.read(65536)
            if not data:
                break
            w.write(data)
            await w.drain()
    finally:
        w.close()


def test_megabyte_echo_through_tunnel_in_random_chunks():
    payload = os.urandom(1024 * 1024 + 777)
    rnd = random.Random(1234)

    async def go():
        async with tcp_server(echo) as echo_port, running_proxy(make_config()) as proxy:
            reader, writer, status = await open_tunnel(proxy.port, f"127.0.0.1:{echo_port}", TOKEN_HDR)
            assert status == 200

            async def send():
                i = 0
                while i < len(payload):
                    n = rnd.randint(1, 50_000)
                    writer.write(payload[i : i + n])
                    await writer.drain()
                    i += n
                writer.write_eof()

            async def recv():
                return await reader.readexactly(len(payload))

            _, echoed = await asyncio.gather(send(), recv())
            tail = await reader.read()
            writer.close()
            return echoed, tail

    echoed, tail = asyncio.run(asyncio.wait_for(go(), timeout=30))
    assert echoed == payload
    assert tail == b""


def test_half_close_keeps_target_to_client_direction_open():
    received = bytearray()

    async def target(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        w.write(b"hello")
        await w.drain()
        while True:
            d = await r.read(1024)
            if not d:
                break
            received.extend(d)
        # Client is half-closed; keep talking for a while
        await asyncio.sleep(0.05)
        for _ in range(20):
            w.write(b"after-eof" * 100)
            await w.drain()
            await asyncio.sleep(0.005)
        w.close()

    async def go():
        async with tcp_server(target) as port, running_proxy(make_config()) as proxy:
            reader, writer, status = await open_tunnel(proxy.port, f"127.0.0.1:{port}", TOKEN_HDR)
            assert status == 200
            writer.write(b"ping")
            await writer.drain()
            writer.write_eof()
            data = await reader.read()
            writer.close()
            return data

    data = asyncio.run(asyncio.wait_for(go(), timeout=15))
    assert data == b"hello" + b"after-eof" * 100 * 20
    assert bytes(received) == b"ping"


def test_dial_failure_after_200_closes_client_quietly():
    dead = free_port()

    async def go():
        async with running_proxy(make_config()) as proxy:
            reader, writer, status = await open_tunnel(proxy.port, f"127.0.0.1:{dead}", TOKEN_HDR)
            rest = await reader.read()
            writer.close()
            return status, rest

    status, rest = asyncio.run(asyncio.wait_for(go(), timeout=15))
    assert status == 200
    assert rest == b""


def test_denied_connect_never_dials_out():
    accepted = []

    async def counting(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        accepted.append(1)
        w.close()

    async def go():
        async with tcp_server(counting) as port:
            async with running_proxy(make_config()) as proxy:
                _, w1, s1 = await open_tunnel(proxy.port, f"127.0.0.1:{port}", "")
                _, w2, s2 = await open_tunnel(proxy.port, f"127.0.0.1:{port}", "X-Proxy-Token: nope\r\n")
                w1.close()
                w2.close()
            async with running_proxy(make_config("basic")) as proxy:
                r3, w3 = await asyncio.open_connection("127.0.0.1", proxy.port)
                w3.write(f"CONNECT 127.0.0.1:{port} HTTP/1.1\r\nProxy-Authorization: {basic('alice', 'wrong')}\r\n\r\n".encode())
                await w3.drain()
                s3, h3, b3 = await read_response(r3)
                w3.close()
            await asyncio.sleep(0.1)
            return s1, s2, s3, h3, b3

    s1, s2, s3, h3, b3 = asyncio.run(asyncio.wait_for(go(), timeout=15))
    assert (s1, s2, s3) == (403, 403, 407)
    assert h3["proxy-authenticate"] == 'Basic realm="Secure Proxy"'
    assert b3 == b"Proxy authentication required"
    assert accepted == []


def test_basic_scheme_tunnel():
    async def go():
        async with tcp_server(echo) as port, running_proxy(make_config("basic")) as proxy:
            reader, writer, status = await open_tunnel(
                proxy.port, f"127.0.0.1:{port}", f"Proxy-Authorization: {basic('bob', 'Hunter2')}\r\n"
            )
            writer.write(b"abc")
            await writer.drain()
            data = await reader.readexactly(3)
            writer.close()
            return status, data

    assert asyncio.run(asyncio.wait_for(go(), timeout=15)) == (200, b"abc")


def test_open_tunnel_does_not_block_other_requests():
    async def go():
        async with tcp_server(echo) as port, running_proxy(make_config()) as proxy:
            _, writer, status = await open_tunnel(proxy.port, f"127.0.0.1:{port}", TOKEN_HDR)
            await asyncio.sleep(0.05)
            active = proxy.active_tunnels
            r, w = await asyncio.open_connection("127.0.0.1", proxy.port)
            w.write(b"GET /health HTTP/1.1\r\nHost: proxy\r\n\r\n")
            await w.drain()
            health = await read_response(r)
            w.close()
            writer.close()
            return status, active, health

    status, active, (hs, _, hb) = asyncio.run(asyncio.wait_for(go(), timeout=15))
    assert status == 200
    assert active == 1
    assert (hs, hb) == (200, b"OK")


def test_session_state_machine_and_byte_counts():
    async def go():
        async with tcp_server(echo) as port:
            # Stand-in client: a socket pair through a local server
            client_side = {}
            ready = asyncio.Event()

            async def accept(r, w):
                client_side["rw"] = (r, w)
                ready.set()

            async with tcp_server(accept) as front:
                cr, cw = await asyncio.open_connection("127.0.0.1", front)
                await ready.wait()
                sr, sw = client_side["rw"]
                session = TunnelSession(sr, sw, resolve_connect_target(f"127.0.0.1:{port}"), cid="t1")
                task = asyncio.create_task(session.run())
                head = await cr.readuntil(b"\r\n\r\n")
                cw.write(b"x" * 1000)
                await cw.drain()
                echoed = await cr.readexactly(1000)
                cw.write_eof()
                tail = await cr.read()
                state = await task
                cw.close()
                return head, echoed, tail, state, session

    head, echoed, tail, state, session = asyncio.run(asyncio.wait_for(go(), timeout=15))
    assert head == b"HTTP/1.1 200 Connection Established\r\n\r\n"
    assert echoed == b"x" * 1000
    assert tail == b""
    assert state is TunnelState.CLOSED
    assert (session.bytes_up, session.bytes_down) == (1000, 1000)


def test_relay_counts_each_direction_independently():
    async def go():
        results = {}

        async def left(r, w):
            results["left"] = (r, w)

        async def right(r, w):
            results["right"] = (r, w)

        async with tcp_server(left) as lp, tcp_server(right) as rp:
            a_peer_r, a_peer_w = await asyncio.open_connection("127.0.0.1", lp)
            b_peer_r, b_peer_w = await asyncio.open_connection("127.0.0.1", rp)
            while "left" not in results or "right" not in results:
                await asyncio.sleep(0.01)
            a_r, a_w = results["left"]
            b_r, b_w = results["right"]
            relay = asyncio.create_task(relay_bidirectional(a_r, a_w, b_r, b_w))
            a_peer_w.write(b"12345")
            a_peer_w.write_eof()
            b_peer_w.write(b"ab")
            b_peer_w.write_eof()
            at_b = await b_peer_r.read()
            at_a = await a_peer_r.read()
            counts = await relay
            a_w.close()
            b_w.close()
            a_peer_w.close()
            b_peer_w.close()
            return at_a, at_b, counts

    at_a, at_b, (a2b, b2a, end_a, end_b) = asyncio.run(asyncio.wait_for(go(), timeout=15))
    assert at_b == b"12345"
    assert at_a == b"ab"
    assert (a2b, b2a) == (5, 2)
    assert (end_a, end_b) == ("eof", "eof")
