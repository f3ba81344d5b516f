from typing import Optional
from pydantic import BaseModel, Field
from datetime import date, timedelta


def add_months(start: date, months: int) -> date:
    """Same day-of-month `months` later, clamped to the month's last day"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    next_month = date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(start.day, last_day))


class Goal(BaseModel):
    """Long-running goal with a daily time target"""
    id: Optional[int] = None
    title: str = Field(min_length=1)
    category: str = Field(default="general")
    daily_minutes: int = Field(default=30, ge=1)
    duration_months: int = Field(default=3, ge=1)
    start_date: date = Field(default_factory=date.today)
    end_date: Optional[date] = None
    is_active: bool = True

    def model_post_init(self, __context) -> None:
        if self.end_date is None:
            self.end_date = add_months(self.start_date, self.duration_months)


class Task(BaseModel):
    """Dated unit of work, optionally attached to a goal"""
    id: Optional[int] = None
    title: str = Field(min_length=1)
    description: str = ""
    goal_id: Optional[int] = None
    due_date: date = Field(default_factory=date.today)
    minutes: int = Field(default=30, ge=0)
    priority: int = Field(default=2, ge=1, le=3)
    is_completed: bool = False
