"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.schemas import (
    AnnualSampleResponse,
    AreaForecastResponse,
    AreaHistoryResponse,
    EventsSampleResponse,
    HourlyPoint,
    ParkingArea,
    ParkingAreaDetail,
    ParkingSensor,
    ParkingStatsResponse,
    StoredHistoryResponse,
)
from models.records import LatLng
from services.errors import InvalidSpatialIdentifier, TransientFetchFailure
from services.forecaster import ForecastSource
from services.pipeline import ParkingPipeline, build_default_pipeline
from services.ranking import RankStrategy
from upstream.opendata import BoundingBox

router = APIRouter(prefix="/api/v1")

_HANDLED = (InvalidSpatialIdentifier, KeyError, TransientFetchFailure)


def get_pipeline() -> ParkingPipeline:
    return build_default_pipeline()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidSpatialIdentifier):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, KeyError):
        detail = exc.args[0] if exc.args else "Not found."
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(detail))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _origin(pipeline: ParkingPipeline, lat: Optional[float], lng: Optional[float]) -> LatLng:
    default = pipeline.default_origin
    return LatLng(
        lat=default.lat if lat is None else lat,
        lng=default.lng if lng is None else lng,
    )


def parse_bbox(value: str) -> BoundingBox:
    """Parse ``minLon,minLat,maxLon,maxLat``."""
    try:
        parts = [float(part) for part in value.split(",")]
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="bbox must be four numbers: minLon,minLat,maxLon,maxLat.",
        ) from exc
    if len(parts) != 4:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="bbox must be four numbers: minLon,minLat,maxLon,maxLat.",
        )
    return BoundingBox(*parts)


@router.get(
    "/parking",
    response_model=List[ParkingSensor],
    summary="Live bay status around a point or inside a bounding box.",
)
async def list_parking(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(900, gt=0),
    limit: int = Query(100, ge=1, le=5000),
    bbox: Optional[str] = Query(None, description="minLon,minLat,maxLon,maxLat"),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> List[ParkingSensor]:
    box = parse_bbox(bbox) if bbox else None
    try:
        records = await pipeline.fetch_live_sensors(
            origin=None if box else _origin(pipeline, lat, lng),
            radius_m=radius,
            bbox=box,
            limit=limit,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return [ParkingSensor.model_validate(record) for record in records]


@router.get(
    "/parking/areas",
    response_model=List[ParkingArea],
    summary="Ranked H3 areas around a point.",
)
async def list_areas(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    res: Optional[int] = None,
    limit: int = Query(20, ge=1, le=100),
    sort: str = RankStrategy.mix.value,
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> List[ParkingArea]:
    try:
        cells = await pipeline.areas(
            _origin(pipeline, lat, lng),
            radius_m=radius,
            resolution=res,
            limit=limit,
            strategy=sort,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return [ParkingArea.model_validate(cell) for cell in cells]


@router.get(
    "/parking/areas/bycoord/history",
    response_model=AreaHistoryResponse,
    summary="Hourly history around a coordinate.",
)
async def history_by_coordinates(
    lat: float,
    lng: float,
    radius: float = Query(1200, gt=0),
    res: Optional[int] = None,
    source: ForecastSource = ForecastSource.live,
    year: Optional[int] = None,
    days: int = Query(30, ge=1, le=3650),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> AreaHistoryResponse:
    try:
        history = await pipeline.history(
            LatLng(lat=lat, lng=lng),
            radius_m=radius,
            resolution=res,
            source=source.value,
            year=year,
            days=days,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return AreaHistoryResponse.model_validate(history)


@router.get(
    "/parking/areas/bycoord/forecast",
    response_model=AreaForecastResponse,
    summary="Forecast for the cell containing a coordinate.",
)
async def forecast_by_coordinates(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    res: Optional[int] = None,
    source: ForecastSource = ForecastSource.live,
    hours: int = 24,
    days: int = 365,
    year: Optional[int] = None,
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> AreaForecastResponse:
    try:
        result = await pipeline.forecast(
            origin=_origin(pipeline, lat, lng),
            hours=hours,
            source=source.value,
            days=days,
            year=year,
            radius_m=radius,
            resolution=res,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return AreaForecastResponse.model_validate(result)


@router.get(
    "/parking/areas/{area_id}",
    response_model=ParkingAreaDetail,
    summary="Area summary with up to 200 member bays.",
)
async def get_area(
    area_id: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> ParkingAreaDetail:
    origin = LatLng(lat=lat, lng=lng) if lat is not None and lng is not None else None
    try:
        detail = await pipeline.area_detail(area_id, origin=origin, radius_m=radius)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    summary = ParkingArea.model_validate(detail.cell)
    return ParkingAreaDetail(
        **summary.model_dump(),
        resolution=detail.resolution,
        members=[ParkingSensor.model_validate(member) for member in detail.members],
    )


@router.get(
    "/parking/areas/{area_id}/forecast",
    response_model=AreaForecastResponse,
    summary="Forecast free bays for an area.",
)
async def forecast_area(
    area_id: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    source: ForecastSource = ForecastSource.live,
    hours: int = 24,
    days: int = 365,
    year: Optional[int] = None,
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> AreaForecastResponse:
    origin = LatLng(lat=lat, lng=lng) if lat is not None and lng is not None else None
    try:
        result = await pipeline.forecast(
            area_id=area_id,
            origin=origin,
            hours=hours,
            source=source.value,
            days=days,
            year=year,
            radius_m=radius,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return AreaForecastResponse.model_validate(result)


@router.get(
    "/parking/{sensor_id}",
    response_model=ParkingSensor,
    summary="Best-effort lookup of one bay near a point.",
)
async def get_parking(
    sensor_id: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1000, gt=0),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> ParkingSensor:
    try:
        record = await pipeline.find_sensor(
            sensor_id, origin=_origin(pipeline, lat, lng), radius_m=radius
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return ParkingSensor.model_validate(record)


@router.get(
    "/stats/parking",
    response_model=ParkingStatsResponse,
    summary="Hourly occupied counts for recent days and the busiest grid squares now.",
)
async def parking_stats(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    days: int = Query(7, ge=1, le=3650),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> ParkingStatsResponse:
    try:
        result = await pipeline.stats(_origin(pipeline, lat, lng), radius_m=radius, days=days)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return ParkingStatsResponse.model_validate(result)


@router.get(
    "/debug/area-history",
    response_model=StoredHistoryResponse,
    summary="Inspect the in-memory snapshots recorded for an area.",
)
async def debug_area_history(
    area_id: str = Query(..., alias="areaId", min_length=1),
    days: int = Query(14, ge=1),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> StoredHistoryResponse:
    series = pipeline.area_history(area_id, days=days)
    return StoredHistoryResponse(
        area_id=area_id,
        days=days,
        points=len(series),
        series=[HourlyPoint.model_validate(bucket) for bucket in series],
    )


@router.get(
    "/debug/annual-sample",
    response_model=AnnualSampleResponse,
    summary="Probe which time field of an annual dataset answers a window query.",
)
async def debug_annual_sample(
    dataset: str = Query(..., min_length=1),
    year: Optional[int] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    limit: int = Query(5, ge=1, le=50),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> AnnualSampleResponse:
    result = await pipeline.sample_annual_dataset(
        dataset.strip(),
        year=year,
        origin=_origin(pipeline, lat, lng),
        radius_m=radius,
        limit=limit,
    )
    return AnnualSampleResponse.model_validate(result)


@router.get(
    "/debug/events-sample",
    response_model=EventsSampleResponse,
    summary="Raw recent rows from the live events dataset.",
)
async def debug_events_sample(
    days: int = Query(30, ge=1, le=3650),
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(1200, gt=0),
    pipeline: ParkingPipeline = Depends(get_pipeline),
) -> EventsSampleResponse:
    result = await pipeline.sample_live_events(
        days=days, origin=_origin(pipeline, lat, lng), radius_m=radius
    )
    return EventsSampleResponse(**result)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
