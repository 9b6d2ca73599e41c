"""测试子图客户端"""

import asyncio
import json

import httpx
import pytest

from agent_discovery.exceptions import (
    NetworkError,
    QueryError,
    RetryExhaustedError,
    SchemaCompatibilityError,
    SerializationError,
)
from agent_discovery.retry import NO_RETRY_CONFIG, RetryConfig
from agent_discovery.sources.subgraph import SubgraphClient, find_rename, AGENT_FIELDS

URL = "https://subgraph.example/8453"

AGENT_ROW = {
    "id": "8453:12",
    "chainId": "8453",
    "agentId": "12",
    "owner": "0xOWNER",
    "operators": ["0xOP"],
    "agentWallet": "0xwallet",
    "totalFeedback": "4",
    "createdAt": "1700000000",
    "updatedAt": "1700000100",
    "lastActivity": "1700000200",
    "registrationFile": {
        "name": "Price Oracle",
        "description": "quotes",
        "mcpEndpoint": "https://mcp.example",
        "x402Support": True,
        "active": True,
        "mcpTools": ["quote"],
    },
}


def _client(handler, retry_config=NO_RETRY_CONFIG):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SubgraphClient(8453, URL, retry_config=retry_config, http_client=http)


def _run(coro):
    return asyncio.run(coro)


def test_search_agents_parses_records():
    """解析 agent 记录并传递变量"""
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        return httpx.Response(200, json={"data": {"agents": [AGENT_ROW]}})

    client = _client(handler)
    rows = _run(client.search_agents({"id_in": ["8453:12"], "createdAt_gte": 5}, first=2, skip=4, order_by="createdAt", order_direction="asc"))

    agent = rows[0]
    assert agent.agentId == "8453:12"
    assert agent.name == "Price Oracle"
    assert agent.owners == ("0xowner",)
    assert agent.mcp == "https://mcp.example"
    assert agent.x402support is True
    assert agent.mcpTools == ("quote",)
    assert agent.feedbackCount == 4

    variables = seen[0]["variables"]
    assert variables["where"] == {"id_in": ["8453:12"], "createdAt_gte": "5"}
    assert variables["first"] == 2
    assert variables["skip"] == 4
    assert variables["orderBy"] == "createdAt"
    assert variables["orderDirection"] == "asc"
    assert "agents(where: $where" in seen[0]["query"]


def test_query_feedback_response_presence():
    """反馈的回复标记"""

    def handler(request):
        return httpx.Response(
            200,
            json={
                "data": {
                    "feedbacks": [
                        {"id": "f1", "agent": {"id": "8453:1"}, "clientAddress": "0xAA", "value": "87.5", "isRevoked": False, "responses": [{"id": "r"}]},
                        {"id": "f2", "agent": {"id": "8453:1"}, "clientAddress": "0xBB", "value": "12", "isRevoked": False, "responses": []},
                    ]
                }
            },
        )

    rows = _run(_client(handler).query_feedback({"isRevoked": False}, first=10))
    assert rows[0].value == 87.5
    assert rows[0].clientAddress == "0xaa"
    assert rows[0].hasResponse is True
    assert rows[1].hasResponse is False


def test_graphql_errors_raise_query_error():
    """GraphQL 错误"""

    def handler(request):
        return httpx.Response(200, json={"errors": [{"message": "syntax error"}]})

    with pytest.raises(QueryError) as exc_info:
        _run(_client(handler).search_agents(None, first=1))
    assert exc_info.value.messages == ["syntax error"]


def test_rename_retry_once_then_succeeds():
    """字段重命名后重试一次成功"""
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        if len(seen) == 1:
            return httpx.Response(200, json={"errors": [{"message": "Type `RegistrationFile_filter` has no field `hasOASF`"}]})
        return httpx.Response(200, json={"data": {"agents": [AGENT_ROW]}})

    where = {"registrationFile_": {"hasOASF": True}}
    rows = _run(_client(handler).search_agents(where, first=1))

    assert len(rows) == 1
    assert len(seen) == 2
    assert seen[1]["variables"]["where"] == {"registrationFile_": {"oasfEndpoint_not": None}}
    assert "hasOASF" not in seen[1]["query"]


def test_rename_second_failure_propagates():
    """重写后再次失败则抛出"""
    seen = []

    def handler(request):
        seen.append(1)
        return httpx.Response(200, json={"errors": [{"message": "Type `Agent` has no field `agentWallet`"}]})

    with pytest.raises(SchemaCompatibilityError) as exc_info:
        _run(_client(handler).search_agents(None, first=1))
    assert exc_info.value.field == "agentWallet"
    assert len(seen) == 2


def test_unrelated_error_not_retried():
    """无关错误不重写"""
    seen = []

    def handler(request):
        seen.append(1)
        return httpx.Response(200, json={"errors": [{"message": "Type `Agent` has no field `mystery`"}]})

    with pytest.raises(QueryError):
        _run(_client(handler).search_agents(None, first=1))
    assert len(seen) == 1


def test_find_rename_word_boundary():
    """重命名匹配按词边界"""
    assert find_rename("Type `Agent` has no field `agentWalletX`", AGENT_FIELDS, None, "agents") is None
    assert find_rename("Type `Agent` has no field `agentWallet`", AGENT_FIELDS, None, "agents").replacement is None


def test_http_error_status():
    """非 2xx 响应"""

    def handler(request):
        return httpx.Response(400, json={})

    with pytest.raises(NetworkError):
        _run(_client(handler).search_agents(None, first=1))


def test_transport_retry():
    """5xx 时重试"""
    seen = []

    def handler(request):
        seen.append(1)
        if len(seen) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": {"agents": []}})

    config = RetryConfig(max_attempts=3, base_delay=0.001, jitter=False)
    assert _run(_client(handler, config).search_agents(None, first=1)) == []
    assert len(seen) == 3


def test_timeout_is_network_error():
    """超时转换为网络错误"""

    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(RetryExhaustedError):
        _run(_client(handler).search_agents(None, first=1))


def test_get_agent_missing():
    """查询不存在的 agent"""

    def handler(request):
        return httpx.Response(200, json={"data": {"agents": []}})

    assert _run(_client(handler).get_agent("8453:99")) is None


def test_non_json_body_is_serialization_error():
    """非 JSON 响应体"""

    def handler(request):
        return httpx.Response(200, content=b"<html>gateway</html>")

    with pytest.raises(SerializationError):
        _run(_client(handler).search_agents(None, first=1))


def test_filter_on_dropped_field_fails_without_retry():
    """过滤条件使用已移除字段时不重试"""
    seen = []

    def handler(request):
        seen.append(1)
        return httpx.Response(200, json={"errors": [{"message": "Type `Agent_filter` has no field `agentWallet`"}]})

    with pytest.raises(SchemaCompatibilityError) as exc_info:
        _run(_client(handler).search_agents({"agentWallet": "0xabc"}, first=1))
    assert exc_info.value.field == "agentWallet"
    assert len(seen) == 1
