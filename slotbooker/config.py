"""
Configuration management using Pydantic models loaded from YAML.
"""

from datetime import date
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.models import WEEKDAY_NAMES, Book, MinuteRange, WeeklyTemplate, parse_clock_time


class DefaultsConfig(BaseModel):
    """Default settings for availability queries."""
    duration_minutes: int = 60
    granularity_minutes: int = 30

    @field_validator("duration_minutes", "granularity_minutes")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure durations and steps are positive."""
        if value <= 0:
            raise ValueError("value must be greater than zero")
        return value


class AdmissionConfig(BaseModel):
    """Concurrency knobs for reservation admission."""
    lock_timeout_seconds: float = 5.0
    storage_retries: int = 1

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("lock_timeout_seconds must be greater than zero")
        return value

    @field_validator("storage_retries")
    @classmethod
    def validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("storage_retries cannot be negative")
        return value


class NotificationsConfig(BaseModel):
    """Where reservation events are sent."""
    webhook_url: Optional[str] = None
    timeout_seconds: float = 10.0
    max_workers: int = 2


class DayHours(BaseModel):
    """Opening hours for one weekday, as HH:MM strings."""
    start: str
    end: str

    @model_validator(mode="after")
    def validate_order(self) -> "DayHours":
        """Ensure the day opens before it closes."""
        self.to_range()
        return self

    def to_range(self) -> MinuteRange:
        return MinuteRange(start=parse_clock_time(self.start), end=parse_clock_time(self.end))


class BookConfig(BaseModel):
    """A book and its weekly template."""
    id: str
    name: str = ""
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    weekly_hours: Dict[str, DayHours] = Field(default_factory=dict)

    @field_validator("weekly_hours")
    @classmethod
    def validate_weekdays(cls, value: Dict[str, DayHours]) -> Dict[str, DayHours]:
        """Ensure weekday keys are known names."""
        unknown = [name for name in value if name.lower() not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {unknown}")
        return {name.lower(): hours for name, hours in value.items()}

    def to_book(self) -> Book:
        return Book(
            id=self.id,
            name=self.name or self.id,
            template=WeeklyTemplate.from_names({
                name: hours.to_range() for name, hours in self.weekly_hours.items()
            }),
            is_active=self.is_active,
            start_date=self.start_date,
            end_date=self.end_date,
        )


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "Europe/Berlin"
    database_url: str = "sqlite:///slotbooker.db"
    log_level: str = "INFO"
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    books: List[BookConfig] = Field(default_factory=list)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("books")
    @classmethod
    def validate_books(cls, value: List[BookConfig]) -> List[BookConfig]:
        """Ensure book ids are unique."""
        seen: set[str] = set()
        for book in value:
            if book.id in seen:
                raise ValueError(f"Duplicate book id detected: {book.id}")
            seen.add(book.id)
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)

    def find_book(self, book_id: str) -> BookConfig | None:
        for book in self.books:
            if book.id == book_id:
                return book
        return None


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
