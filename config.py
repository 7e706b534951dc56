import os
from functools import lru_cache
from pathlib import Path

DEFAULT_CATEGORIES = "food,health,housing,sports,education"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        categories: tuple[str, ...],
        report_cache_strict: bool,
        log_level: str,
        team: tuple[tuple[str, str], ...],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.categories = categories
        self.report_cache_strict = report_cache_strict
        self.log_level = log_level
        self.team = team


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("COSTS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_team(value: str) -> tuple[tuple[str, str], ...]:
    members: list[tuple[str, str]] = []
    for chunk in value.split(";"):
        parts = chunk.split()
        if not parts:
            continue
        members.append((parts[0], " ".join(parts[1:])))
    return tuple(members)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "costs.db"
    database_url = os.getenv("COSTS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("COSTS_TIMEZONE", "UTC")
    categories = tuple(
        name.strip()
        for name in os.getenv("COSTS_CATEGORIES", DEFAULT_CATEGORIES).split(",")
        if name.strip()
    )
    report_cache_strict = _parse_bool(os.getenv("COSTS_REPORT_CACHE_STRICT", "true"))
    log_level = os.getenv("COSTS_LOG_LEVEL", "INFO").upper()
    team = _parse_team(os.getenv("COSTS_TEAM", "Jane Doe"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        categories=categories,
        report_cache_strict=report_cache_strict,
        log_level=log_level,
        team=team,
    )
