from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig

API_PREFIX = "/api/v1"


def _drop_none(params: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class ApiClient:
    """Minimal HTTP client for the forecast service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def list_areas(
        self,
        *,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius: float = 1200,
        res: Optional[int] = None,
        limit: int = 20,
        sort: str = "mix",
    ) -> List[Dict[str, Any]]:
        params = {"lat": lat, "lng": lng, "radius": radius, "res": res, "limit": limit, "sort": sort}
        return self._get("/parking/areas", params)

    def get_area(self, area_id: str, *, radius: float = 1200) -> Dict[str, Any]:
        return self._get(f"/parking/areas/{area_id}", {"radius": radius}, not_found=f"Area {area_id}")

    def get_forecast(
        self,
        *,
        area_id: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        res: Optional[int] = None,
        hours: int = 24,
        source: str = "live",
        year: Optional[int] = None,
        radius: float = 1200,
    ) -> Dict[str, Any]:
        params = {"hours": hours, "source": source, "year": year, "radius": radius}
        if area_id:
            return self._get(
                f"/parking/areas/{area_id}/forecast", params, not_found=f"Area {area_id}"
            )
        params.update(lat=lat, lng=lng, res=res)
        return self._get("/parking/areas/bycoord/forecast", params)

    def get_history(
        self,
        *,
        lat: float,
        lng: float,
        source: str = "live",
        year: Optional[int] = None,
        days: int = 30,
        radius: float = 1200,
    ) -> Dict[str, Any]:
        params = {"lat": lat, "lng": lng, "source": source, "year": year, "days": days, "radius": radius}
        return self._get("/parking/areas/bycoord/history", params)

    def get_stats(
        self,
        *,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius: float = 1200,
        days: int = 7,
    ) -> Dict[str, Any]:
        return self._get("/stats/parking", {"lat": lat, "lng": lng, "radius": radius, "days": days})

    def _get(self, path: str, params: Dict[str, Any], not_found: Optional[str] = None) -> Any:
        try:
            response = self._client.get(f"{API_PREFIX}{path}", params=_drop_none(params))
            if response.status_code == 404 and not_found:
                raise typer.BadParameter(f"{not_found} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.HTTPError as exc:
            typer.secho(f"Request failed: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except ValueError:
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
