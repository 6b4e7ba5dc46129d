import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from minerboard.endpoints import EndpointPool
from minerboard.errors import ContractRevert, ProviderLimitError, RpcError, RpcTimeout
from minerboard.rpc import JsonRpcClient, classify_error
from minerboard.state import ConnectionContext


def _rpc_app(handler):
    async def endpoint(request: web.Request) -> web.Response:
        body = await request.json()
        return await handler(body)

    app = web.Application()
    app.router.add_post("/", endpoint)
    return app


async def _serve(handler):
    server = TestServer(_rpc_app(handler))
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_block_number_and_logs():
    seen = []

    async def handler(body):
        seen.append(body)
        if body["method"] == "eth_blockNumber":
            return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": "0x10"})
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": [{"topics": []}]})

    server = await _serve(handler)
    client = JsonRpcClient(str(server.make_url("/")))
    try:
        assert await client.block_number() == 16
        logs = await client.get_logs(address="0xabc", topics=["0x01"], from_block=1, to_block=255)
        assert logs == [{"topics": []}]
        params = seen[-1]["params"][0]
        assert params["fromBlock"] == "0x1"
        assert params["toBlock"] == "0xff"
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_error_objects_are_classified():
    async def handler(body):
        messages = {
            "eth_getLogs": {"code": -32005, "message": "query returned more than 10000 results"},
            "eth_call": {"code": 3, "message": "execution reverted"},
            "eth_chainId": {"code": -32603, "message": "boom"},
        }
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "error": messages[body["method"]]})

    server = await _serve(handler)
    client = JsonRpcClient(str(server.make_url("/")))
    try:
        with pytest.raises(ProviderLimitError):
            await client.get_logs(address="0xabc", topics=[], from_block=0, to_block=1)
        with pytest.raises(ContractRevert):
            await client.eth_call("0xabc", "0x12345678")
        with pytest.raises(RpcError) as info:
            await client.chain_id()
        assert info.value.code == -32603
        assert not info.value.retryable
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_http_errors_and_empty_call_result():
    async def handler(body):
        if body["method"] == "eth_call":
            return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": "0x"})
        return web.Response(status=429, text="Too Many Requests")

    server = await _serve(handler)
    client = JsonRpcClient(str(server.make_url("/")))
    try:
        with pytest.raises(RpcError) as info:
            await client.block_number()
        assert info.value.status == 429
        assert info.value.retryable
        with pytest.raises(ContractRevert):
            await client.eth_call("0xabc", "0x12345678")
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_timeout_raises_rpc_timeout():
    async def handler(body):
        await asyncio.sleep(0.5)
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": "0x1"})

    server = await _serve(handler)
    client = JsonRpcClient(str(server.make_url("/")), timeout=0.05)
    try:
        with pytest.raises(RpcTimeout):
            await client.block_number()
    finally:
        await client.close()
        await server.close()


def test_classify_error_markers():
    assert isinstance(classify_error("Log response size exceeded"), ProviderLimitError)
    assert isinstance(classify_error("block range is too large"), ProviderLimitError)
    assert isinstance(classify_error("VM execution reverted"), ContractRevert)
    err = classify_error("upstream timed out")
    assert type(err) is RpcError and err.retryable
    assert classify_error("HTTP 503", status=503).retryable
    assert not classify_error("invalid params").retryable


@pytest.mark.asyncio
async def test_malformed_block_number_is_an_rpc_error():
    async def handler(body):
        result = None if body["method"] == "eth_blockNumber" else "not-hex"
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": result})

    server = await _serve(handler)
    client = JsonRpcClient(str(server.make_url("/")))
    try:
        with pytest.raises(RpcError, match="eth_blockNumber"):
            await client.block_number()
        with pytest.raises(RpcError, match="eth_chainId"):
            await client.chain_id()
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_pool_fails_over_past_malformed_endpoint():
    async def broken(body):
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": None})

    async def healthy(body):
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": "0x10"})

    first = await _serve(broken)
    second = await _serve(healthy)
    ctx = ConnectionContext()
    pool = EndpointPool([str(first.make_url("/")), str(second.make_url("/"))], ctx)
    try:
        client = await pool.connect()
        assert client.url == str(second.make_url("/"))
        assert ctx.state.endpoint_index == 1
        assert await client.block_number() == 16
    finally:
        await pool.close()
        await first.close()
        await second.close()
