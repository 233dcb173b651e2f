"""Entry point for the FastAPI-powered series tracker."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, settings
from .database import Database
from .errors import (
    CatalogNotFoundError,
    FetchError,
    IncompatibleVersionError,
    InUseError,
    InvalidSnapshotError,
    NotFoundError,
    StoreCorruptionError,
)
from .models import Category
from .services.freshness import FreshnessPolicy
from .services.notifications import NotificationFeed
from .services.progress import compute_progress, load_progress
from .services.statistics import GroupBy, StatisticsService
from .services.store import RecordStore
from .services.sync import BatchReport, SeriesClient, SyncOrchestrator, SyncResult
from .services.tvmaze import TVMazeClient
from .utils import utcnow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TrackRequest(BaseModel):
    category: Category | None = None


class CategoryRequest(BaseModel):
    category: Category


def _build_lifespan(app_settings: Settings, catalog_client: SeriesClient | None):
    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        exit_stack = AsyncExitStack()
        client = catalog_client
        if client is None:
            http_client = await exit_stack.enter_async_context(
                httpx.AsyncClient(
                    base_url=str(app_settings.tvmaze_api_url),
                    timeout=httpx.Timeout(app_settings.request_timeout_seconds, connect=10.0),
                )
            )
            client = TVMazeClient(app_settings, http_client)

        database = Database(app_settings.database_url)
        await database.create_all()

        store = RecordStore(database.session_factory)
        orchestrator = SyncOrchestrator(
            store,
            client,
            FreshnessPolicy.from_settings(app_settings),
            concurrency=app_settings.refresh_concurrency,
            refresh_interval_seconds=app_settings.refresh_interval_seconds,
        )
        feed = NotificationFeed(store)
        feed.attach()
        await feed.rebuild()

        fastapi_app.state.database = database
        fastapi_app.state.store = store
        fastapi_app.state.orchestrator = orchestrator
        fastapi_app.state.feed = feed
        fastapi_app.state.statistics = StatisticsService(store)
        await orchestrator.start()

        try:
            yield
        finally:
            await orchestrator.stop()
            feed.detach()
            await database.dispose()
            await exit_stack.aclose()

    return lifespan


def create_app(
    app_settings: Settings | None = None,
    *,
    catalog_client: SeriesClient | None = None,
) -> FastAPI:
    resolved_settings = app_settings or settings
    fastapi_app = FastAPI(
        title=resolved_settings.app_name,
        description="Watch progress tracking for television series",
        version="1.0.0",
        lifespan=_build_lifespan(resolved_settings, catalog_client),
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_orchestrator(fastapi_app: FastAPI) -> SyncOrchestrator:
    orchestrator = getattr(fastapi_app.state, "orchestrator", None)
    if not isinstance(orchestrator, SyncOrchestrator):
        raise RuntimeError("Sync orchestrator not initialised")
    return orchestrator


def get_store(fastapi_app: FastAPI) -> RecordStore:
    return get_orchestrator(fastapi_app).store


def get_feed(fastapi_app: FastAPI) -> NotificationFeed:
    feed = getattr(fastapi_app.state, "feed", None)
    if not isinstance(feed, NotificationFeed):
        raise RuntimeError("Notification feed not initialised")
    return feed


def get_statistics(fastapi_app: FastAPI) -> StatisticsService:
    service = getattr(fastapi_app.state, "statistics", None)
    if not isinstance(service, StatisticsService):
        raise RuntimeError("Statistics service not initialised")
    return service


def _sync_payload(result: SyncResult) -> dict[str, Any]:
    return {
        "series": result.record.model_dump(mode="json"),
        "degraded": result.degraded,
        "fetched": result.fetched,
        "error": str(result.error) if result.error else None,
    }


def _batch_payload(report: BatchReport) -> dict[str, Any]:
    return {
        "refreshed": sorted(
            series_id for series_id, result in report.results.items() if result.fetched
        ),
        "fresh": sorted(
            series_id
            for series_id, result in report.results.items()
            if not result.fetched and not result.degraded
        ),
        "degraded": sorted(report.degraded),
        "failed": {
            **{
                series_id: {"kind": "store", "message": str(error)}
                for series_id, error in sorted(report.errors.items())
            },
            **{
                series_id: {"kind": error.kind.value, "message": str(error)}
                for series_id, error in sorted(report.failures.items())
            },
        },
        "skipped": report.skipped,
        "cancelled": report.cancelled,
    }


def _error_response(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": error, "detail": str(exc)}
    )


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(404, "not_found", exc)

    @fastapi_app.exception_handler(InUseError)
    async def _in_use(_: Request, exc: InUseError) -> JSONResponse:
        return _error_response(409, "in_use", exc)

    @fastapi_app.exception_handler(IncompatibleVersionError)
    async def _incompatible(_: Request, exc: IncompatibleVersionError) -> JSONResponse:
        return _error_response(400, "incompatible_version", exc)

    @fastapi_app.exception_handler(InvalidSnapshotError)
    async def _invalid_snapshot(_: Request, exc: InvalidSnapshotError) -> JSONResponse:
        return _error_response(400, "invalid_snapshot", exc)

    @fastapi_app.exception_handler(FetchError)
    async def _fetch_failed(_: Request, exc: FetchError) -> JSONResponse:
        if isinstance(exc, CatalogNotFoundError):
            return _error_response(404, exc.kind.value, exc)
        return _error_response(502, exc.kind.value, exc)

    @fastapi_app.exception_handler(StoreCorruptionError)
    async def _corrupt(_: Request, exc: StoreCorruptionError) -> JSONResponse:
        logger.error("Store corruption detected: %s", exc)
        return _error_response(500, "store_corruption", exc)

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/search")
    async def search(q: str, cache: bool = True) -> dict[str, Any]:
        summaries = await get_orchestrator(fastapi_app).search(q, cache_results=cache)
        return {"results": [summary.model_dump(mode="json") for summary in summaries]}

    @fastapi_app.get("/series/{series_id}")
    async def series_detail(series_id: str, force: bool = False) -> dict[str, Any]:
        result = await get_orchestrator(fastapi_app).get_series(series_id, force=force)
        return _sync_payload(result)

    @fastapi_app.delete("/series/{series_id}", status_code=204)
    async def delete_series(series_id: str, cascade: bool = False) -> Response:
        await get_store(fastapi_app).delete_series(series_id, cascade_untrack=cascade)
        return Response(status_code=204)

    @fastapi_app.get("/series/{series_id}/progress")
    async def series_progress(series_id: str, episodes: bool = True) -> dict[str, Any]:
        progress = await load_progress(get_store(fastapi_app), series_id, utcnow())
        return progress.to_payload(include_episodes=episodes)

    @fastapi_app.put("/series/{series_id}/episodes/{season}/{episode}/watched")
    async def mark_episode(series_id: str, season: int, episode: int) -> dict[str, bool]:
        changed = await get_store(fastapi_app).set_watched(series_id, season, episode, True)
        return {"changed": changed}

    @fastapi_app.delete("/series/{series_id}/episodes/{season}/{episode}/watched")
    async def unmark_episode(series_id: str, season: int, episode: int) -> dict[str, bool]:
        changed = await get_store(fastapi_app).set_watched(series_id, season, episode, False)
        return {"changed": changed}

    @fastapi_app.put("/series/{series_id}/seasons/{season}/watched")
    async def mark_season(
        series_id: str, season: int, include_unaired: bool = False
    ) -> dict[str, int]:
        changed = await get_store(fastapi_app).set_season_watched(
            series_id,
            season,
            True,
            aired_before=None if include_unaired else utcnow(),
        )
        return {"changed": changed}

    @fastapi_app.delete("/series/{series_id}/seasons/{season}/watched")
    async def unmark_season(series_id: str, season: int) -> dict[str, int]:
        changed = await get_store(fastapi_app).set_season_watched(series_id, season, False)
        return {"changed": changed}

    @fastapi_app.get("/tracked")
    async def tracked(category: Category | None = None) -> dict[str, Any]:
        store = get_store(fastapi_app)
        entries = await store.list_tracked(category)
        series_ids = [entry.series_id for entry in entries]
        records = await store.get_many_series(series_ids)
        markers = await store.get_watched_many(records)
        now = utcnow()
        items: list[dict[str, Any]] = []
        for entry in entries:
            record = records.get(entry.series_id)
            item: dict[str, Any] = entry.model_dump(mode="json")
            item["name"] = record.name if record else None
            item["status"] = record.status.value if record else None
            item["progress"] = None
            if record is not None:
                progress = compute_progress(record, markers[record.id], now)
                item["progress"] = progress.to_payload(include_episodes=False)
            items.append(item)
        return {"tracked": items}

    @fastapi_app.post("/tracked/{series_id}")
    async def track(series_id: str, payload: TrackRequest | None = None) -> dict[str, Any]:
        category = payload.category if payload else None
        entry, result = await get_orchestrator(fastapi_app).track(series_id, category)
        return {
            "entry": entry.model_dump(mode="json"),
            "metadata": _sync_payload(result) if result else None,
        }

    @fastapi_app.patch("/tracked/{series_id}")
    async def update_category(series_id: str, payload: CategoryRequest) -> dict[str, Any]:
        entry = await get_store(fastapi_app).set_category(series_id, payload.category)
        return {"entry": entry.model_dump(mode="json")}

    @fastapi_app.delete("/tracked/{series_id}")
    async def untrack(series_id: str) -> dict[str, bool]:
        removed = await get_store(fastapi_app).untrack_series(series_id)
        if not removed:
            raise HTTPException(status_code=404, detail=f"Series {series_id} is not tracked")
        return {"removed": True}

    @fastapi_app.post("/refresh")
    async def refresh(
        category: Category | None = Category.RUNNING, force: bool = False
    ) -> dict[str, Any]:
        report = await get_orchestrator(fastapi_app).refresh_tracked(category, force=force)
        return _batch_payload(report)

    @fastapi_app.get("/statistics")
    async def statistics(
        group_by: GroupBy | None = None,
        watched_only: bool = False,
        category: Category | None = None,
    ) -> dict[str, Any]:
        stats = await get_statistics(fastapi_app).collect(
            group_by=group_by, watched_only=watched_only, category=category
        )
        return stats.to_payload()

    @fastapi_app.get("/upcoming")
    async def upcoming() -> dict[str, Any]:
        feed = get_feed(fastapi_app)
        return {"upcoming": [entry.to_payload() for entry in feed.upcoming()]}

    @fastapi_app.get("/export")
    async def export_snapshot() -> JSONResponse:
        snapshot = await get_store(fastapi_app).export_snapshot()
        return JSONResponse(snapshot.model_dump(mode="json"))

    @fastapi_app.post("/import")
    async def import_snapshot(request: Request) -> dict[str, int]:
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        snapshot = await get_store(fastapi_app).import_snapshot(payload)
        return {
            "series": len(snapshot.series),
            "watched": len(snapshot.watched),
            "tracked": len(snapshot.tracked),
        }

    @fastapi_app.post("/cache/clear")
    async def clear_cache(untrack: bool = False) -> dict[str, int]:
        removed = await get_store(fastapi_app).clear_cache(untrack=untrack)
        return {"removed": removed}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
