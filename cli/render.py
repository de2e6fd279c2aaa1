from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _format_distance(value: Any) -> str:
    return "-" if value is None else f"{value:.0f}m"


def render_areas(areas: List[Dict[str, Any]]) -> None:
    echo_heading("Parking Areas")
    if not areas:
        typer.echo("No areas found.")
        return
    for rank, area in enumerate(areas, start=1):
        typer.echo(
            f"{rank:>3}. {area.get('area_id')}  "
            f"free={area.get('available_bays')}/{area.get('total_bays')}  "
            f"occupancy={area.get('occupancy_rate')}  "
            f"distance={_format_distance(area.get('distance_m'))}  "
            f"score={area.get('score')}"
        )


def render_area(payload: Dict[str, Any]) -> None:
    echo_heading("Area")
    center = payload.get("center") or {}
    echo_key_values(
        [
            ("area_id", payload.get("area_id")),
            ("resolution", payload.get("resolution")),
            ("center", f"{center.get('lat')},{center.get('lng')}"),
            ("total_bays", payload.get("total_bays")),
            ("available_bays", payload.get("available_bays")),
            ("occupancy_rate", payload.get("occupancy_rate")),
            ("updated_at", payload.get("updated_at")),
        ]
    )
    members = payload.get("members") or []
    typer.echo()
    echo_heading(f"Members ({len(members)})")
    for member in members:
        status = member.get("available_spots")
        label = "unknown" if status is None else ("free" if status else "occupied")
        typer.echo(f"  - {member.get('id')} {member.get('name')}: {label}")


def render_forecast(payload: Dict[str, Any]) -> None:
    echo_heading("Forecast")
    echo_key_values(
        [
            ("area_id", payload.get("area_id")),
            ("source", payload.get("source")),
            ("total_bays", payload.get("total_bays")),
            ("horizon_hours", payload.get("horizon_hours")),
        ]
    )
    typer.echo()
    points = payload.get("points") or []
    if not points:
        typer.echo("No forecast points.")
        return
    for point in points:
        typer.echo(
            f"  {point.get('ts')}  expected={point.get('expected_available')}  "
            f"range={point.get('lo80')}-{point.get('hi80')}"
        )


def render_history(payload: Dict[str, Any]) -> None:
    echo_heading("History")
    echo_key_values(
        [
            ("source", payload.get("source")),
            ("tier", payload.get("tier")),
            ("year", payload.get("year")),
            ("total_bays", payload.get("total_bays")),
        ]
    )
    series = payload.get("series") or []
    typer.echo(f"points: {len(series)}")
    if not series:
        typer.echo("No history available.")
        return
    typer.echo(f"first: {series[0].get('ts')}")
    typer.echo(f"last: {series[-1].get('ts')}")


def render_stats(payload: Dict[str, Any]) -> None:
    echo_heading("Occupancy by Grid Square")
    squares = payload.get("average_occupancy") or []
    if not squares:
        typer.echo("No live bays found.")
    for square in squares:
        typer.echo(f"  {square.get('car_park')}  {square.get('percentage')}%")
    typer.echo()
    hours = payload.get("busiest_hours") or []
    busiest = sorted(hours, key=lambda entry: entry.get("count") or 0, reverse=True)[:5]
    echo_heading("Busiest Hours")
    for entry in busiest:
        typer.echo(f"  {entry.get('hour')}  occupied={entry.get('count')}")
