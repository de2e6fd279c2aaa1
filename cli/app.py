from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_area, render_areas, render_forecast, render_history, render_stats


class SortOption(str, Enum):
    availability = "availability"
    occupancy = "occupancy"
    distance = "distance"
    mix = "mix"


class SourceOption(str, Enum):
    live = "live"
    annual = "annual"


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Query parking areas and occupancy forecasts from the kerbside service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to KERBSIDE_API_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for each request.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("areas")
def areas_command(
    ctx: typer.Context,
    lat: Optional[float] = typer.Option(None, "--lat", help="Latitude of the search origin."),
    lng: Optional[float] = typer.Option(None, "--lng", help="Longitude of the search origin."),
    radius: float = typer.Option(1200, "--radius", "-r", min=1, help="Search radius in metres."),
    res: Optional[int] = typer.Option(None, "--res", min=0, max=15, help="H3 resolution."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=100),
    sort: SortOption = typer.Option(SortOption.mix, "--sort", help="Ranking strategy."),
) -> None:
    """List ranked parking areas around a point."""
    state = _get_state(ctx)
    payload = state.client.list_areas(
        lat=lat, lng=lng, radius=radius, res=res, limit=limit, sort=sort.value
    )
    render_areas(payload)


@app.command("area")
def area_command(
    ctx: typer.Context,
    area_id: str = typer.Argument(..., help="H3 cell identifier."),
    radius: float = typer.Option(1200, "--radius", "-r", min=1),
) -> None:
    """Show one area with its member bays."""
    state = _get_state(ctx)
    render_area(state.client.get_area(area_id, radius=radius))


@app.command("forecast")
def forecast_command(
    ctx: typer.Context,
    area_id: Optional[str] = typer.Argument(None, help="H3 cell identifier; omit to use --lat/--lng."),
    lat: Optional[float] = typer.Option(None, "--lat"),
    lng: Optional[float] = typer.Option(None, "--lng"),
    res: Optional[int] = typer.Option(None, "--res", min=0, max=15),
    hours: int = typer.Option(24, "--hours", min=1, max=48, help="Forecast horizon."),
    source: SourceOption = typer.Option(SourceOption.live, "--source"),
    year: Optional[int] = typer.Option(None, "--year", help="Annual dataset year."),
    radius: float = typer.Option(1200, "--radius", "-r", min=1),
) -> None:
    """Forecast free bays for an area or for the cell containing a point."""
    if area_id is None and (lat is None or lng is None):
        raise typer.BadParameter("Pass an AREA_ID or both --lat and --lng.")
    state = _get_state(ctx)
    payload = state.client.get_forecast(
        area_id=area_id,
        lat=lat,
        lng=lng,
        res=res,
        hours=hours,
        source=source.value,
        year=year,
        radius=radius,
    )
    render_forecast(payload)


@app.command("history")
def history_command(
    ctx: typer.Context,
    lat: float = typer.Option(..., "--lat"),
    lng: float = typer.Option(..., "--lng"),
    source: SourceOption = typer.Option(SourceOption.live, "--source"),
    year: Optional[int] = typer.Option(None, "--year"),
    days: int = typer.Option(30, "--days", min=1, max=3650),
    radius: float = typer.Option(1200, "--radius", "-r", min=1),
) -> None:
    """Show the hourly history summary around a point."""
    state = _get_state(ctx)
    payload = state.client.get_history(
        lat=lat, lng=lng, source=source.value, year=year, days=days, radius=radius
    )
    render_history(payload)


@app.command("stats")
def stats_command(
    ctx: typer.Context,
    lat: Optional[float] = typer.Option(None, "--lat"),
    lng: Optional[float] = typer.Option(None, "--lng"),
    radius: float = typer.Option(1200, "--radius", "-r", min=1),
    days: int = typer.Option(7, "--days", min=1, max=3650),
) -> None:
    """Show the busiest grid squares now and the busiest recent hours."""
    state = _get_state(ctx)
    render_stats(state.client.get_stats(lat=lat, lng=lng, radius=radius, days=days))


if __name__ == "__main__":
    app()
