import asyncio

import pytest

from matchroom.media import (
    LoopbackSignalingChannel,
    MediaAccessError,
    MediaSessionAdapter,
    VirtualMediaDevices,
)


def test_denied_device_raises():
    media = MediaSessionAdapter(devices=VirtualMediaDevices(denied={"a"}))
    with pytest.raises(MediaAccessError):
        media.acquire("a")
    assert not media.has_endpoint("a")


def test_acquire_reuses_live_stream():
    media = MediaSessionAdapter()
    first = media.acquire("a")
    assert media.acquire("a") is first


def test_offer_answer_handshake():
    channel = LoopbackSignalingChannel()
    media = MediaSessionAdapter(channel=channel)
    a, b = media.acquire("a"), media.acquire("b")
    connected = []

    async def run():
        responder = await b.connect(b.local_media, False, "a", link_id="s1")
        initiator = await a.connect(a.local_media, True, "b", link_id="s1")
        for link in (responder, initiator):
            link.on_connected.append(lambda link: connected.append(link.local_id))
        await b.open(responder)
        await a.open(initiator)
        return responder, initiator

    responder, initiator = asyncio.run(run())
    assert sorted(connected) == ["a", "b"]
    assert responder.remote_stream == a.local_stream_id
    assert initiator.remote_stream == b.local_stream_id
    assert [kind for _, _, kind in channel.delivered] == ["offer", "answer"]


def test_offer_before_responder_link_is_buffered():
    media = MediaSessionAdapter()
    a, b = media.acquire("a"), media.acquire("b")

    async def run():
        initiator = await a.connect(None, True, "b", link_id="s1")
        await a.open(initiator)
        assert not initiator.connected
        responder = await b.connect(None, False, "a", link_id="s1")
        await b.open(responder)
        return responder, initiator

    responder, initiator = asyncio.run(run())
    assert responder.connected
    assert initiator.connected


def test_missing_peer_reports_error():
    media = MediaSessionAdapter()
    a = media.acquire("a")
    errors = []

    async def run():
        link = await a.connect(None, True, "ghost")
        link.on_error.append(lambda link, err: errors.append(err))
        await a.open(link)
        return link

    link = asyncio.run(run())
    assert not link.connected
    assert len(errors) == 1
    assert isinstance(errors[0], ConnectionError)


def test_destroy_is_idempotent():
    media = MediaSessionAdapter()
    a = media.acquire("a")
    link = asyncio.run(a.connect(None, True, "b"))
    assert link.destroy() is True
    assert link.destroy() is False
    assert link.destroyed


def test_release_stops_local_media():
    media = MediaSessionAdapter()
    a = media.acquire("a")
    link = asyncio.run(a.connect(None, True, "b"))
    media.release("a")
    assert a.local_media.released
    assert link.destroyed
    assert not media.has_endpoint("a")
    media.release("a")
    fresh = media.acquire("a")
    assert fresh is not a
    assert not fresh.local_media.released
