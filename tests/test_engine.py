"""测试多链搜索引擎"""

import asyncio

import pytest

from agent_discovery.config import ChainConfig, DiscoveryConfig
from agent_discovery.engine import SearchEngine
from agent_discovery.exceptions import (
    AmbiguousAgentIdError,
    ChainNotConfiguredError,
    MissingCandidateSetError,
    RPCError,
    SemanticSearchError,
    ValidationError,
)
from agent_discovery.merger import sort_agents
from agent_discovery.models import FeedbackFilters, MetadataRecord, SearchFilters, SearchOptions
from agent_discovery.semantic import SemanticHit
from conftest import FakeSource, make_agent, make_feedback


class FakeGateway:
    """Semantic gateway returning fixed hits."""

    def __init__(self, hits=None, error=None):
        self.hits = list(hits or [])
        self.error = error
        self.queries = []
        self.closed = False

    async def search(self, query, *, min_score=None, top_k=None):
        self.queries.append((query, min_score, top_k))
        if self.error is not None:
            raise self.error
        return list(self.hits)

    async def aclose(self):
        self.closed = True


def _config(chain_ids=(1, 8453, 137), default_chain=1, chain_timeout=5.0):
    chains = tuple(ChainConfig(chainId=c, subgraphUrl=f"https://subgraph.example/{c}") for c in chain_ids)
    return DiscoveryConfig(chains=chains, defaultChainId=default_chain, chainTimeout=chain_timeout)


def _engine(sources, gateway=None, **config_kwargs):
    chain_ids = config_kwargs.pop("chain_ids", tuple(sources) or (1,))
    return SearchEngine(
        _config(chain_ids=chain_ids, **config_kwargs),
        sources=sources,
        semantic=gateway or FakeGateway(),
    )


def _run(coro):
    return asyncio.run(coro)


def _ids(items):
    return [a.agentId for a in items]


class TestStructuredSearch:
    """测试结构化搜索路径"""

    def test_slow_chain_times_out_others_succeed(self):
        """慢链超时，其余链正常返回"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2, 3)]),
            8453: FakeSource(8453, agents=[make_agent(8453, t) for t in (1, 2)]),
            137: FakeSource(137, agents=[make_agent(137, 9)], delay=1.0),
        }
        engine = _engine(sources, chain_timeout=0.05)
        result = _run(engine.search_agents(SearchFilters(chains=[1, 8453, 137]), SearchOptions(pageSize=10)))

        assert _ids(result.items) == ["1:3", "1:2", "8453:2", "1:1", "8453:1"]
        assert result.meta.chains == [1, 8453, 137]
        assert result.meta.successfulChains == [1, 8453]
        assert [(f.chainId, f.status) for f in result.meta.failedChains] == [(137, "timeout")]
        assert result.meta.failedChains[0].error
        assert result.meta.totalResults == 5
        assert result.nextCursor is None
        assert "totalMs" in result.meta.timing

    def test_cursor_pages_cover_sorted_union(self):
        """游标翻页结果等于排序后的并集"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t, updatedAt=u) for t, u in enumerate((5, 9, 1, 7, 7, 3))]),
            8453: FakeSource(8453, agents=[make_agent(8453, t, updatedAt=u) for t, u in enumerate((7, 2, 8, 6))]),
            137: FakeSource(137, agents=[]),
        }
        engine = _engine(sources)
        filters = SearchFilters(chains="all")

        seen = []
        cursor = None
        pages = 0
        while True:
            result = _run(engine.search_agents(filters, SearchOptions(pageSize=3, cursor=cursor)))
            seen.extend(result.items)
            pages += 1
            cursor = result.nextCursor
            if cursor is None:
                break
            assert pages < 10

        union = sort_agents([a for s in sources.values() for a in s.agents], "updatedAt", "desc")
        assert _ids(seen) == _ids(union)
        assert len(set(_ids(seen))) == len(seen)

    def test_cursor_is_per_chain_json(self):
        """游标记录每条链的偏移"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2, 3)]),
            8453: FakeSource(8453, agents=[make_agent(8453, t) for t in (1, 2)]),
        }
        result = _run(_engine(sources).search_agents(SearchFilters(chains=[1, 8453]), SearchOptions(pageSize=2)))
        assert _ids(result.items) == ["1:3", "1:2"]
        assert result.nextCursor == '{"1":2,"8453":0}'
        assert sources[8453].calls[0][3] == 0

    def test_feedback_average_end_to_end(self):
        """按反馈均值过滤并排序"""
        feedback_a = [
            make_feedback("1:1", 1, 90, tag1="latency"),
            make_feedback("1:1", 2, 80, tag1="latency"),
            make_feedback("1:2", 3, 70, tag1="latency"),
            make_feedback("1:3", 4, 99, tag2="latency"),
            make_feedback("1:4", 5, 100, tag1="uptime"),
        ]
        feedback_b = [
            make_feedback("8453:1", 1, 95, tag1="latency"),
            make_feedback("8453:2", 2, 81, tag2="latency"),
            make_feedback("8453:3", 3, 60, tag1="latency"),
        ]
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2, 3, 4)], feedback=feedback_a),
            8453: FakeSource(8453, agents=[make_agent(8453, t) for t in (1, 2, 3)], feedback=feedback_b),
        }
        engine = _engine(sources)
        filters = SearchFilters(chains=[1, 8453], feedback=FeedbackFilters(tag="latency", minValue=80))
        options = SearchOptions(sort=["averageValue:desc"], pageSize=10)

        result = _run(engine.search_agents(filters, options))

        assert _ids(result.items) == ["1:3", "8453:1", "1:1", "8453:2"]
        assert [a.averageValue for a in result.items] == [99.0, 95.0, 85.0, 81.0]
        assert all(a.averageValue >= 80 for a in result.items)
        assert result.meta.failedChains == []

    def test_feedback_average_pages(self):
        """均值排序的分页"""
        feedback_a = [make_feedback("1:1", 1, 90, tag1="latency"), make_feedback("1:2", 2, 85, tag1="latency")]
        feedback_b = [make_feedback("8453:1", 1, 95, tag1="latency"), make_feedback("8453:2", 2, 80, tag1="latency")]
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2)], feedback=feedback_a),
            8453: FakeSource(8453, agents=[make_agent(8453, t) for t in (1, 2)], feedback=feedback_b),
        }
        engine = _engine(sources)
        filters = SearchFilters(chains=[1, 8453], feedback=FeedbackFilters(tag="latency", minCount=1))

        first = _run(engine.search_agents(filters, SearchOptions(sort=["averageValue:desc"], pageSize=2)))
        assert _ids(first.items) == ["8453:1", "1:1"]
        assert first.nextCursor == '{"1":1,"8453":1}'

        second = _run(
            engine.search_agents(filters, SearchOptions(sort=["averageValue:desc"], pageSize=2, cursor=first.nextCursor))
        )
        assert _ids(second.items) == ["1:2", "8453:2"]
        assert second.nextCursor is None

    def test_all_chains_fail(self):
        """所有链失败时返回空结果与失败信息"""
        sources = {
            1: FakeSource(1, error=RPCError("down")),
            8453: FakeSource(8453, error=RPCError("down")),
        }
        result = _run(_engine(sources).search_agents(SearchFilters(chains=[1, 8453])))
        assert result.items == []
        assert result.nextCursor is None
        assert result.meta.totalResults == 0
        assert result.meta.successfulChains == []
        assert [(f.chainId, f.status) for f in result.meta.failedChains] == [(1, "error"), (8453, "error")]

    def test_feedback_count_is_scope_count(self):
        """feedbackCount 为范围内的反馈数量"""
        feedback = [
            make_feedback("1:1", 1, 90, tag1="latency"),
            make_feedback("1:1", 2, 80, tag1="latency"),
            *[make_feedback("1:1", 10 + i, 50, tag1="uptime") for i in range(5)],
            *[make_feedback("1:2", 20 + i, 60, tag2="latency") for i in range(3)],
        ]
        agents = [make_agent(1, 1, feedbackCount=7), make_agent(1, 2, feedbackCount=3), make_agent(1, 3, feedbackCount=9)]
        engine = _engine({1: FakeSource(1, agents=agents, feedback=feedback)})
        filters = SearchFilters(feedback=FeedbackFilters(tag="latency", minCount=1))

        result = _run(engine.search_agents(filters, SearchOptions(sort=["feedbackCount:desc"])))

        assert _ids(result.items) == ["1:2", "1:1"]
        assert [a.feedbackCount for a in result.items] == [3, 2]
        assert result.items[1].averageValue == 85.0

    def test_name_sort_merges_in_backend_order(self):
        """名称排序与后端码位顺序一致"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, 1, name="Beta"), make_agent(1, 2, name="alpha")]),
            8453: FakeSource(8453, agents=[make_agent(8453, 1, name="Charlie")]),
        }
        engine = _engine(sources)
        filters = SearchFilters(chains=[1, 8453])

        first = _run(engine.search_agents(filters, SearchOptions(sort=["name:asc"], pageSize=2)))
        assert [a.name for a in first.items] == ["Beta", "Charlie"]
        assert sources[1].calls[0][4] == "registrationFile__name"

        second = _run(engine.search_agents(filters, SearchOptions(sort=["name:asc"], pageSize=2, cursor=first.nextCursor)))
        assert [a.name for a in second.items] == ["alpha"]
        assert second.nextCursor is None

    def test_failed_chain_skip_kept_while_others_have_rows(self):
        """失败链的偏移仅在其他链仍有数据时保留"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2)]),
            8453: FakeSource(8453, error=RPCError("down")),
        }
        engine = _engine(sources)
        filters = SearchFilters(chains=[1, 8453])

        first = _run(engine.search_agents(filters, SearchOptions(pageSize=1, cursor='{"1":0,"8453":4}')))
        assert _ids(first.items) == ["1:2"]
        assert first.nextCursor == '{"1":1,"8453":4}'

        last = _run(engine.search_agents(filters, SearchOptions(pageSize=1, cursor=first.nextCursor)))
        assert _ids(last.items) == ["1:1"]
        assert last.nextCursor is None
        assert [f.chainId for f in last.meta.failedChains] == [8453]

    def test_unconfigured_chain_is_unavailable(self):
        """未配置的链标记为 unavailable"""
        sources = {1: FakeSource(1, agents=[make_agent(1, 1)])}
        result = _run(_engine(sources).search_agents(SearchFilters(chains=[999, 1])))
        assert _ids(result.items) == ["1:1"]
        assert [(f.chainId, f.status) for f in result.meta.failedChains] == [(999, "unavailable")]

    def test_default_chain_used_without_chain_filter(self):
        """无链过滤时使用默认链"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, 1)]),
            8453: FakeSource(8453, agents=[make_agent(8453, 1)]),
        }
        result = _run(_engine(sources, default_chain=8453).search_agents())
        assert result.meta.chains == [8453]
        assert sources[1].calls == []

    def test_agent_ids_restrict_chains(self):
        """agentIds 限定链与结果"""
        sources = {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2, 3)]),
            8453: FakeSource(8453, agents=[make_agent(8453, t) for t in (1, 2)]),
        }
        filters = SearchFilters(chains=[1, 8453], agentIds=["1:2", "1:3"])
        result = _run(_engine(sources).search_agents(filters))
        assert _ids(result.items) == ["1:3", "1:2"]
        assert sources[8453].calls == []

    def test_metadata_prefilter(self):
        """元数据预过滤"""
        sources = {
            1: FakeSource(
                1,
                agents=[make_agent(1, t) for t in (1, 2)],
                metadata=[MetadataRecord(id="m", agentId="1:2", key="category", value="0x01")],
            ),
        }
        result = _run(_engine(sources).search_agents(SearchFilters(hasMetadataKey="category")))
        assert _ids(result.items) == ["1:2"]
        assert sources[1].calls[0][0] == "query_metadata"


class TestValidation:
    """测试请求前校验"""

    def test_invalid_page_size(self):
        """pageSize 非法"""
        source = FakeSource(1, agents=[make_agent(1, 1)])
        with pytest.raises(ValidationError):
            _run(_engine({1: source}).search_agents(SearchFilters(), SearchOptions(pageSize=0)))
        assert source.calls == []

    def test_bare_id_across_chains(self):
        """多链搜索时裸 ID 有歧义"""
        sources = {1: FakeSource(1), 8453: FakeSource(8453)}
        with pytest.raises(AmbiguousAgentIdError):
            _run(_engine(sources).search_agents(SearchFilters(chains=[1, 8453], agentIds=["7"])))
        assert sources[1].calls == [] and sources[8453].calls == []

    def test_has_no_feedback_without_candidates(self):
        """hasNoFeedback 缺少候选集"""
        source = FakeSource(1)
        filters = SearchFilters(feedback=FeedbackFilters(hasNoFeedback=True, tag="latency"))
        with pytest.raises(MissingCandidateSetError):
            _run(_engine({1: source}).search_agents(filters))
        assert source.calls == []

    def test_bad_time_filter(self):
        """时间过滤值非法"""
        source = FakeSource(1)
        with pytest.raises(ValidationError):
            _run(_engine({1: source}).search_agents(SearchFilters(registeredAtFrom="not a date")))
        assert source.calls == []


class TestKeywordSearch:
    """测试关键字搜索路径"""

    def _sources(self):
        return {
            1: FakeSource(1, agents=[make_agent(1, t) for t in (1, 2, 3)]),
            8453: FakeSource(8453, agents=[make_agent(8453, t) for t in (1, 2)]),
            137: FakeSource(137, agents=[make_agent(137, 1)]),
        }

    def _hits(self):
        return [
            SemanticHit(chainId=137, agentId="137:1", score=0.99),
            SemanticHit(chainId=8453, agentId="8453:1", score=0.95),
            SemanticHit(chainId=1, agentId="1:2", score=0.9),
            SemanticHit(chainId=1, agentId="1:1", score=0.5),
            SemanticHit(chainId=1, agentId="1:2", score=0.1),
        ]

    def test_ranked_and_restricted_to_chains(self):
        """按语义分数排序并限制在所选链"""
        sources = self._sources()
        gateway = FakeGateway(self._hits())
        engine = _engine(sources, gateway)
        filters = SearchFilters(chains=[1, 8453], keyword="  oracle ")

        first = _run(engine.search_agents(filters, SearchOptions(pageSize=2, semanticMinScore=0.3)))
        assert gateway.queries[0] == ("oracle", 0.3, None)
        assert _ids(first.items) == ["8453:1", "1:2"]
        assert [a.semanticScore for a in first.items] == [0.95, 0.9]
        assert first.nextCursor == "2"
        assert first.meta.totalResults == 3
        assert sources[137].calls == []

        second = _run(engine.search_agents(filters, SearchOptions(pageSize=2, cursor=first.nextCursor)))
        assert _ids(second.items) == ["1:1"]
        assert second.nextCursor is None

    def test_keyword_defaults_to_all_chains(self):
        """关键字搜索默认所有配置的链"""
        result = _run(_engine(self._sources(), FakeGateway(self._hits())).search_agents(SearchFilters(keyword="oracle")))
        assert result.meta.chains == [1, 8453, 137]
        assert _ids(result.items)[0] == "137:1"

    def test_keyword_with_agent_ids(self):
        """关键字与 agentIds 取交集"""
        engine = _engine(self._sources(), FakeGateway(self._hits()))
        filters = SearchFilters(chains=[1, 8453], keyword="oracle", agentIds=["1:1", "8453:2"])
        result = _run(engine.search_agents(filters))
        assert _ids(result.items) == ["1:1"]

    def test_keyword_sorted_by_other_field(self):
        """关键字结果可按其他字段排序"""
        engine = _engine(self._sources(), FakeGateway(self._hits()))
        filters = SearchFilters(chains=[1, 8453], keyword="oracle")
        result = _run(engine.search_agents(filters, SearchOptions(sort=["updatedAt:asc"])))
        assert _ids(result.items) == ["1:1", "8453:1", "1:2"]

    def test_gateway_failure_is_raised(self):
        """语义服务失败直接抛出"""
        engine = _engine(self._sources(), FakeGateway(error=SemanticSearchError("down", status_code=502)))
        with pytest.raises(SemanticSearchError):
            _run(engine.search_agents(SearchFilters(keyword="oracle")))


class TestSingleAgentOperations:
    """测试单个 agent 操作"""

    def _engine(self, default_chain=1):
        feedback = [
            make_feedback("1:2", 1, 90, tag1="latency"),
            make_feedback("1:2", 2, 70, tag1="latency", clientAddress="0xdef"),
            make_feedback("1:2", 3, 10, tag1="uptime"),
            make_feedback("1:2", 4, 5, tag1="latency", isRevoked=True),
            make_feedback("1:3", 5, 100, tag1="latency"),
        ]
        sources = {1: FakeSource(1, agents=[make_agent(1, 2)], feedback=feedback)}
        return _engine(sources, default_chain=default_chain)

    def test_get_agent(self):
        """按 ID 获取 agent"""
        engine = self._engine()
        assert _run(engine.get_agent("1:2")).agentId == "1:2"
        assert _run(engine.get_agent("2")).agentId == "1:2"
        assert _run(engine.get_agent("1:404")) is None

    def test_get_agent_routing_errors(self):
        """路由错误"""
        with pytest.raises(ChainNotConfiguredError):
            _run(self._engine().get_agent("999:1"))
        with pytest.raises(ValidationError):
            _run(self._engine(default_chain=None).get_agent("2"))

    def test_search_feedback(self):
        """搜索反馈"""
        engine = self._engine()
        rows = _run(engine.search_feedback("1:2", tags=["latency"]))
        assert sorted(r.value for r in rows) == [70, 90]
        rows = _run(engine.search_feedback("1:2", reviewers=["0xDEF"]))
        assert [r.value for r in rows] == [70]
        rows = _run(engine.search_feedback("1:2", include_revoked=True, min_value=50))
        assert sorted(r.value for r in rows) == [70, 90]

    def test_reputation_summary(self):
        """信誉摘要"""
        engine = self._engine()
        summary = _run(engine.get_reputation_summary("1:2"))
        assert summary.count == 3
        assert summary.averageValue == pytest.approx(170 / 3)

        summary = _run(engine.get_reputation_summary("1:2", tag1="latency"))
        assert summary.count == 2
        assert summary.averageValue == 80.0

        summary = _run(engine.get_reputation_summary("1:9"))
        assert summary.count == 0
        assert summary.averageValue == 0.0

    def test_context_manager_closes_sources(self):
        """关闭引擎时释放数据源"""
        source = FakeSource(1)
        gateway = FakeGateway()

        async def scenario():
            async with SearchEngine(_config(chain_ids=(1,)), sources={1: source}, semantic=gateway):
                pass

        _run(scenario())
        assert source.closed is True
        assert gateway.closed is True
