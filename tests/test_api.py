import pytest

from safupad_indexer.api import IndexerApi
from safupad_indexer.utils import composite_id, day_bucket

from .conftest import BUYER, CONTRIBUTOR, START_TS, TOKEN, bought, pool_created, project_launch, sold


@pytest.fixture
def populated(storage, applier, log):
    for event in [
        pool_created(log),
        bought(log, bnb=10, tokens=90),
        sold(log, bnb=8, tokens=50),
        sold(log, bnb=1, tokens=500),
        project_launch(log, token="0x" + "22" * 20),
        log.add("ContributionMade", token="0x" + "22" * 20, contributor=CONTRIBUTOR, amount=5),
    ]:
        applier.apply(event)
    return storage


@pytest.fixture
async def client(aiohttp_client, populated):
    api = IndexerApi(populated, cors_allow_origins=["https://app.safupad.xyz/"], chain_id=97)
    return await aiohttp_client(api.create_app())


class TestReadApi:
    @pytest.mark.asyncio
    async def test_health(self, client, log):
        resp = await client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["ok"] is True
        assert data["chainId"] == 97
        assert data["appliedEvents"] == 6
        assert data["checkpoint"] == {"block": log.block, "logIndex": 0}
        assert data["entityCounts"]["Trade"] == 3

    @pytest.mark.asyncio
    async def test_get_entity(self, client):
        resp = await client.get(f"/entities/TokenHolder/{composite_id(TOKEN, BUYER).upper()}")
        assert resp.status == 200
        data = await resp.json()
        assert data["balance"] == "40"
        assert data["_version"] == 2

    @pytest.mark.asyncio
    async def test_unknown_entity(self, client):
        assert (await client.get("/entities/Pool/0xdead")).status == 404
        assert (await client.get("/entities/Nope/x")).status == 404

    @pytest.mark.asyncio
    async def test_list_entities(self, client):
        resp = await client.get("/entities/Trade?limit=2")
        data = await resp.json()
        assert data["count"] == 2
        assert (await client.get("/entities/Trade?limit=x")).status == 400

    @pytest.mark.asyncio
    async def test_pool_trades_newest_first(self, client):
        resp = await client.get(f"/pools/{TOKEN}/trades")
        data = await resp.json()
        assert [t["bnb_amount"] for t in data["items"]] == ["1", "8", "10"]

    @pytest.mark.asyncio
    async def test_children_reject_bad_address(self, client):
        assert (await client.get("/tokens/not-an-address/holders")).status == 400

    @pytest.mark.asyncio
    async def test_holders_and_contributions(self, client):
        holders = await (await client.get(f"/tokens/{TOKEN}/holders")).json()
        assert holders["count"] == 1
        contributions = await (await client.get(f"/launches/0x{'22' * 20}/contributions")).json()
        assert contributions["items"][0]["amount"] == "5"

    @pytest.mark.asyncio
    async def test_stats(self, client):
        platform = await (await client.get("/stats/platform")).json()
        assert platform["total_volume"] == "19"
        assert platform["total_launches"] == "1"

        daily = await (await client.get(f"/stats/daily?from={START_TS}&to={START_TS + 3600}")).json()
        assert daily["items"][0]["day"] == day_bucket(START_TS)
        assert daily["items"][0]["trade_count"] == "3"
        assert (await client.get("/stats/daily?from=10&to=5")).status == 400

    @pytest.mark.asyncio
    async def test_issues(self, client):
        data = await (await client.get("/issues")).json()
        assert [i["kind"] for i in data["items"]] == ["arithmetic_invariant_violation"]

    @pytest.mark.asyncio
    async def test_cors_headers(self, client):
        resp = await client.get("/checkpoint", headers={"Origin": "https://app.safupad.xyz"})
        assert resp.headers["Access-Control-Allow-Origin"] == "https://app.safupad.xyz"
        other = await client.get("/checkpoint", headers={"Origin": "https://evil.example"})
        assert "Access-Control-Allow-Origin" not in other.headers
        preflight = await client.options("/stats/platform", headers={"Origin": "https://app.safupad.xyz"})
        assert preflight.status == 204


@pytest.mark.asyncio
async def test_platform_stats_empty_store(aiohttp_client, storage):
    client = await aiohttp_client(IndexerApi(storage).create_app())
    assert (await client.get("/stats/platform")).status == 404
    assert await (await client.get("/checkpoint")).json() is None
