"""
HTTP surface tests over an in-memory chain reader
"""
import asyncio
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from wedged_risk.cache import CacheKey
from wedged_risk.main import create_app
from wedged_risk.models import AssetPairKey

from tests.conftest import TOKEN_A, USER, WETH, eth


@pytest.fixture
def app(settings, chain_reader):
    return create_app(settings, chain_reader=chain_reader)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
class TestServiceEndpoints:
    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "Wedged Risk Engine"

    async def test_health(self, client):
        response = await client.get("/api/risk/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "operational"
        assert data["background_tasks_running"] is False
        assert data["chain_reader"]["reader"] == "FakeChainReader"

    async def test_process_time_header(self, client):
        response = await client.get("/")

        assert "x-process-time" in response.headers


@pytest.mark.asyncio
class TestPoolRiskEndpoints:
    async def test_pool_risk(self, client):
        response = await client.get("/api/pools/1/risk")

        assert response.status_code == 200
        data = response.json()
        assert data["pool_id"] == 1
        assert data["composite_score"] == 8000
        assert data["level"] == "critical"
        assert data["utilization"] == pytest.approx(80.0)
        assert data["recommendations"][0]["kind"] == "critical"

    async def test_unknown_pool_is_404(self, client):
        response = await client.get("/api/pools/99/risk")

        assert response.status_code == 404
        assert "99" in response.json()["error"]

    async def test_invalid_pool_id_is_422(self, client):
        assert (await client.get("/api/pools/0/risk")).status_code == 422
        assert (await client.get("/api/pools/abc/risk")).status_code == 422

    async def test_chain_failure_is_503(self, client, chain_reader):
        chain_reader.fail_pools.add(1)

        response = await client.get("/api/pools/1/risk")

        assert response.status_code == 503

    async def test_deadline_exceeded_is_503(self, client, app, chain_reader):
        app.state.settings.REQUEST_TIMEOUT_SECONDS = 0.01
        chain_reader.gate = asyncio.Event()

        response = await client.get("/api/pools/1/risk")

        assert response.status_code == 503
        chain_reader.gate.set()
        await asyncio.sleep(0.01)

    async def test_history_default_timeframe(self, client):
        response = await client.get("/api/pools/1/risk/history")

        assert response.status_code == 200
        data = response.json()
        assert data["timeframe"] == "24h"
        assert len(data["points"]) == 24

    async def test_history_seven_days(self, client):
        response = await client.get("/api/pools/1/risk/history", params={"timeframe": "7d"})

        assert response.status_code == 200
        assert len(response.json()["points"]) == 7

    async def test_history_invalid_timeframe(self, client):
        response = await client.get("/api/pools/1/risk/history", params={"timeframe": "1y"})

        assert response.status_code == 422

    async def test_recommendations(self, client):
        response = await client.get("/api/pools/1/recommendations")

        assert response.status_code == 200
        kinds = [r["kind"] for r in response.json()]
        assert kinds[0] == "critical"


@pytest.mark.asyncio
class TestMarketAndCacheEndpoints:
    async def test_market_conditions(self, client):
        response = await client.get("/api/market/conditions")

        assert response.status_code == 200
        data = response.json()
        assert data["sentiment"] == "low_volatility"
        assert data["correlation_index"] == pytest.approx(50.0)

    async def test_cache_stats_after_query(self, client):
        await client.get("/api/pools/1/risk")

        response = await client.get("/api/cache/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["per_category"]["pool_risk"] == 1
        assert data["price_series"] == 1

    async def test_clear_cache(self, client, app):
        await client.get("/api/pools/1/risk")

        response = await client.delete("/api/cache")

        assert response.status_code == 200
        assert response.json() == {"cleared": True}
        assert len(app.state.risk_engine.cache) == 0

    async def test_invalidate_requires_target(self, client):
        response = await client.post("/api/cache/invalidate")

        assert response.status_code == 400

    async def test_invalidate_pool(self, client):
        await client.get("/api/pools/1/risk")

        response = await client.post("/api/cache/invalidate", params={"pool_id": 1})

        assert response.status_code == 200
        assert response.json()["removed"] >= 1

    async def test_invalidate_user(self, client, app):
        app.state.risk_engine.cache.set(CacheKey.account_health(USER, TOKEN_A), {"health": 2})

        response = await client.post("/api/cache/invalidate", params={"user": USER})

        assert response.json() == {"removed": 1}

    async def test_invalidate_category(self, client, app):
        await client.get("/api/pools/1/risk")

        response = await client.post("/api/cache/invalidate", params={"category": "pool_risk"})

        assert response.json() == {"removed": 1}
        assert app.state.risk_engine.cache.get(CacheKey.pool_risk(1)) is None

    async def test_invalidate_unknown_category_is_422(self, client):
        response = await client.post("/api/cache/invalidate", params={"category": "everything"})

        assert response.status_code == 422

    async def test_invalidate_rejects_malformed_user(self, client):
        response = await client.post("/api/cache/invalidate", params={"user": "not-an-address"})

        assert response.status_code == 422

    async def test_market_reflects_cached_volatility(self, client, app):
        app.state.risk_engine.cache.set(CacheKey.volatility(AssetPairKey.of(TOKEN_A, WETH)), 7000)

        response = await client.get("/api/market/conditions")

        assert response.json()["sentiment"] == "high_volatility"


@pytest.mark.asyncio
class TestPortfolioEndpoints:
    async def test_portfolio_risk(self, client, chain_reader):
        chain_reader.add_position(USER, 1, eth(25))

        response = await client.get(f"/api/users/{USER}/portfolio/risk")

        assert response.status_code == 200
        data = response.json()
        assert data["level"] == "Critical"
        assert data["total_exposure"] == eth(25)
        assert data["positions"][0]["pool_id"] == 1
        assert data["risk_distribution"]["Critical"] == 1

    async def test_malformed_user_is_422(self, client):
        response = await client.get("/api/users/not-an-address/portfolio/risk")

        assert response.status_code == 422

    async def test_invalidate_user_forces_recompute(self, client, chain_reader):
        chain_reader.add_position(USER, 1, eth(25))
        await client.get(f"/api/users/{USER}/portfolio/risk")
        chain_reader.add_position(USER, 1, eth(50))

        cached = await client.get(f"/api/users/{USER}/portfolio/risk")
        await client.post("/api/cache/invalidate", params={"user": USER})
        fresh = await client.get(f"/api/users/{USER}/portfolio/risk")

        assert cached.json()["total_exposure"] == eth(25)
        assert fresh.json()["total_exposure"] == eth(50)
        assert chain_reader.user_pool_reads == 2
