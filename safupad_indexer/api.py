import time
from typing import Any, Dict, Iterable, Optional

from aiohttp import web

from .models import ENTITY_TYPES, PLATFORM_STATS_ID, Contribution, TokenHolder, Trade
from .storage import Storage
from .utils import day_bucket, normalize_address


class IndexerApi:
    """Read-only JSON view of the entity store."""

    def __init__(
        self,
        storage: Storage,
        ingestor: Optional[Any] = None,
        inbox: Optional[Any] = None,
        cors_allow_origins: Iterable[str] = (),
        chain_id: Optional[int] = None,
    ):
        self.storage = storage
        self.chain_id = chain_id
        self.ingestor = ingestor
        self.inbox = inbox
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cors_allow_origins if str(x).strip()
        }

    async def health_handler(self, request: web.Request) -> web.Response:
        checkpoint = self.storage.get_checkpoint()
        return web.json_response(
            {
                "ok": True,
                "chainId": self.chain_id,
                "checkpoint": _checkpoint_json(checkpoint),
                "appliedEvents": self.storage.count_applied_events(),
                "entityCounts": self.storage.count_entities(),
                "queueSize": self.ingestor.queue.qsize() if self.ingestor is not None else 0,
                "inboxSize": self.inbox.queue_size() if self.inbox is not None else None,
                "stats": dict(self.ingestor.stats) if self.ingestor is not None else {},
            }
        )

    async def checkpoint_handler(self, request: web.Request) -> web.Response:
        return web.json_response(_checkpoint_json(self.storage.get_checkpoint()))

    async def entity_handler(self, request: web.Request) -> web.Response:
        entity_type = request.match_info["type"]
        if entity_type not in ENTITY_TYPES:
            return web.json_response({"error": f"unknown entity type: {entity_type}"}, status=404)
        entity_id = request.match_info["id"].strip().lower()
        data = self.storage.get_entity(entity_type, entity_id)
        if data is None:
            return web.json_response({"error": f"{entity_type} {entity_id} not found"}, status=404)
        return web.json_response(data)

    async def entity_list_handler(self, request: web.Request) -> web.Response:
        entity_type = request.match_info["type"]
        if entity_type not in ENTITY_TYPES:
            return web.json_response({"error": f"unknown entity type: {entity_type}"}, status=404)
        try:
            limit_n = int(request.query.get("limit", "100"))
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            return web.json_response({"error": "limit/offset must be integer"}, status=400)
        limit_n = max(1, min(limit_n, 1000))
        data = self.storage.list_entities(entity_type, limit_n, offset)
        return web.json_response({"type": entity_type, "count": len(data), "items": data})

    async def _children(self, request: web.Request, entity_type: str, key: str, newest_first: bool) -> web.Response:
        try:
            ref = normalize_address(request.match_info[key])
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        try:
            limit_n = int(request.query.get("limit", "100"))
        except ValueError:
            return web.json_response({"error": "limit must be integer"}, status=400)
        limit_n = max(1, min(limit_n, 1000))
        data = self.storage.list_children(entity_type, ref, limit_n, newest_first=newest_first)
        return web.json_response({key: ref, "count": len(data), "items": data})

    async def pool_trades_handler(self, request: web.Request) -> web.Response:
        return await self._children(request, Trade.ENTITY_TYPE, "token", newest_first=True)

    async def token_holders_handler(self, request: web.Request) -> web.Response:
        return await self._children(request, TokenHolder.ENTITY_TYPE, "token", newest_first=False)

    async def launch_contributions_handler(self, request: web.Request) -> web.Response:
        return await self._children(request, Contribution.ENTITY_TYPE, "token", newest_first=False)

    async def platform_stats_handler(self, request: web.Request) -> web.Response:
        data = self.storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
        if data is None:
            return web.json_response({"error": "no platform activity indexed yet"}, status=404)
        return web.json_response(data)

    async def daily_stats_handler(self, request: web.Request) -> web.Response:
        try:
            from_ts = int(request.query.get("from", "0"))
            to_ts = int(request.query.get("to", str(int(time.time()))))
        except ValueError:
            return web.json_response({"error": "from/to must be integer"}, status=400)
        if to_ts < from_ts:
            return web.json_response({"error": "invalid time range"}, status=400)
        data = self.storage.query_daily_stats(day_bucket(from_ts), day_bucket(to_ts))
        return web.json_response({"count": len(data), "items": data})

    async def issues_handler(self, request: web.Request) -> web.Response:
        try:
            limit_n = int(request.query.get("limit", "100"))
        except ValueError:
            return web.json_response({"error": "limit must be integer"}, status=400)
        limit_n = max(1, min(limit_n, 500))
        data = self.storage.list_issues(limit_n)
        return web.json_response({"count": len(data), "items": data})

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    def create_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/checkpoint", self.checkpoint_handler)
        app.router.add_get("/entities/{type}", self.entity_list_handler)
        app.router.add_get("/entities/{type}/{id}", self.entity_handler)
        app.router.add_get("/pools/{token}/trades", self.pool_trades_handler)
        app.router.add_get("/tokens/{token}/holders", self.token_holders_handler)
        app.router.add_get("/launches/{token}/contributions", self.launch_contributions_handler)
        app.router.add_get("/stats/platform", self.platform_stats_handler)
        app.router.add_get("/stats/daily", self.daily_stats_handler)
        app.router.add_get("/issues", self.issues_handler)
        return app


def _checkpoint_json(checkpoint) -> Optional[Dict[str, int]]:
    if checkpoint is None:
        return None
    return {"block": checkpoint[0], "logIndex": checkpoint[1]}
