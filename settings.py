from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_BASE_URL_ENV = "OPEN_DATA_BASE"
_API_KEY_ENV = "ODS_API_KEY"
_LIVE_DATASET_ENV = "LIVE_DATASET_ID"
_EVENTS_DATASET_ENV = "EVENTS_DATASET_ID"
_ANNUAL_DATASETS_ENV = "ANNUAL_EVENTS_DATASETS"
_ANNUAL_YEAR_ENV = "ANNUAL_DEFAULT_YEAR"
_ANNUAL_MAY_ONLY_ENV = "ANNUAL_2020_MAY_ONLY"
_PEDESTRIAN_COUNTS_ENV = "PEDESTRIAN_COUNTS_DATASET_ID"
_PEDESTRIAN_LOCATIONS_ENV = "PEDESTRIAN_LOCATIONS_DATASET_ID"
_RETENTION_DAYS_ENV = "AREA_HISTORY_RETENTION_DAYS"
_DEFAULT_CAPACITY_ENV = "DEFAULT_CAPACITY"
_RESOLUTION_ENV = "DEFAULT_H3_RESOLUTION"
_DEFAULT_LAT_ENV = "DEFAULT_LAT"
_DEFAULT_LNG_ENV = "DEFAULT_LNG"
_LOG_LEVEL_ENV = "LOG_LEVEL"

DEFAULT_ANNUAL_DATASETS = (
    "on-street-car-parking-sensor-data-2019",
    "on-street-car-parking-sensor-data-2020-jan-may",
)


@dataclass(frozen=True)
class Settings:
    base_url: str
    api_key: Optional[str]
    live_dataset_id: str
    events_dataset_id: Optional[str]
    annual_dataset_ids: tuple[str, ...]
    annual_default_year: int
    annual_2020_may_only: bool
    pedestrian_counts_dataset_id: str
    pedestrian_locations_dataset_id: str
    retention_days: int
    default_capacity: int
    default_resolution: int
    default_lat: float
    default_lng: float
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    if parsed < minimum or (maximum is not None and parsed > maximum):
        return default
    return parsed


def _read_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        return float(candidate)
    except ValueError:
        return default


def _read_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "on"}:
        return True
    if candidate in {"0", "false", "no", "off"}:
        return False
    return default


def _read_dataset_list(default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(_ANNUAL_DATASETS_ENV)
    if value is None:
        return default
    parts = tuple(part.strip() for part in value.split(",") if part.strip())
    return parts or default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        base_url=_read_str_env(_BASE_URL_ENV, "https://data.melbourne.vic.gov.au").rstrip("/"),
        api_key=_read_optional_env(_API_KEY_ENV, None),
        live_dataset_id=_read_str_env(_LIVE_DATASET_ENV, "on-street-parking-bay-sensors"),
        events_dataset_id=_read_optional_env(_EVENTS_DATASET_ENV, None),
        annual_dataset_ids=_read_dataset_list(DEFAULT_ANNUAL_DATASETS),
        annual_default_year=_read_int_env(_ANNUAL_YEAR_ENV, 2019, minimum=1970),
        annual_2020_may_only=_read_bool_env(_ANNUAL_MAY_ONLY_ENV, True),
        pedestrian_counts_dataset_id=_read_str_env(
            _PEDESTRIAN_COUNTS_ENV, "pedestrian-counting-system-monthly-counts-per-hour"
        ),
        pedestrian_locations_dataset_id=_read_str_env(
            _PEDESTRIAN_LOCATIONS_ENV, "pedestrian-counting-system-sensor-locations"
        ),
        retention_days=_read_int_env(_RETENTION_DAYS_ENV, 30),
        default_capacity=_read_int_env(_DEFAULT_CAPACITY_ENV, 60),
        default_resolution=_read_int_env(_RESOLUTION_ENV, 9, minimum=0, maximum=15),
        default_lat=_read_float_env(_DEFAULT_LAT_ENV, -37.8136),
        default_lng=_read_float_env(_DEFAULT_LNG_ENV, 144.9631),
        log_level=_read_log_level("INFO"),
    )
